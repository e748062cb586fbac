"""One-shot expression polishing. Nothing here is persisted."""

from typing import Callable

from chatline.client import (
    CancelToken,
    CompletionClient,
    CompletionRequest,
    CompletionResult,
)
from chatline.config import DEFAULT_POLISH_PROMPT

POLISH_API_KEY_MISSING = (
    "API key not configured. Please set your API key in Settings > Expression Polishing."
)
EMPTY_POLISH_INPUT = "Please enter some text to polish."


async def polish_expression(
    client: CompletionClient,
    settings: dict,
    user_input: str,
    on_chunk: Callable[[str], None] | None = None,
    cancel: CancelToken | None = None,
) -> CompletionResult:
    if not settings.get("api_key"):
        return CompletionResult.failure(POLISH_API_KEY_MISSING)
    if not user_input.strip():
        return CompletionResult.failure(EMPTY_POLISH_INPUT)

    request = CompletionRequest(
        api_url=settings["api_url"],
        api_key=settings["api_key"],
        model=settings["model"],
        messages=[{"role": "user", "content": user_input}],
        system_prompt=settings.get("system_prompt", DEFAULT_POLISH_PROMPT),
    )
    return await client.send(request, on_chunk, cancel)
