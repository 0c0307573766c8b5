from __future__ import annotations

import asyncio
import uuid
from typing import Any, Dict, List, Optional, Tuple

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from google.generativeai.types import BlockedPromptException, StopCandidateException

from .completion import (
    ASSISTANT,
    SYSTEM,
    TOOL,
    ChatMessage,
    Completion,
    CompletionRequest,
    ToolCall,
)
from .config import Settings
from .errors import FatalCompletionError, TransientCompletionError

DEFAULT_SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_ONLY_HIGH"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_ONLY_HIGH"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_ONLY_HIGH"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_ONLY_HIGH"},
]

TOOLS_DISABLED_CONFIG = {"function_calling_config": {"mode": "NONE"}}

# Finish reason 3 is SAFETY in the Gemini candidate enum.
_SAFETY_FINISH_REASON = 3

_FATAL_ERRORS = (
    google_exceptions.Unauthenticated,
    google_exceptions.PermissionDenied,
)
_TRANSIENT_ERRORS = (
    google_exceptions.DeadlineExceeded,
    google_exceptions.ServiceUnavailable,
    google_exceptions.InternalServerError,
    google_exceptions.ResourceExhausted,
    google_exceptions.TooManyRequests,
    asyncio.TimeoutError,
    ConnectionError,
)


class GeminiCompletionService:
    """CompletionService backed by the Gemini SDK with function calling."""

    def __init__(self, settings: Settings) -> None:
        """Purpose: Configure the Gemini SDK for completion calls.
        Inputs/Outputs: Input is Settings; no return value.
        Side Effects / State: Configures the SDK global API key.
        Dependencies: Uses google.generativeai and Settings from config.
        Failure Modes: Raises ValueError if API key or model name is missing.
        If Removed: The orchestrator has no real completion service to call.
        Testing Notes: Missing key raises ValueError; tests use a fake service instead.
        """
        # Configure API key and remember the default model.
        if not settings.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is required")
        genai.configure(api_key=settings.gemini_api_key)
        self._default_model = _normalize_model_name(settings.gemini_model)
        if not self._default_model:
            raise ValueError("Gemini model name is required")

    async def send(self, request: CompletionRequest) -> Completion:
        """Purpose: Send one completion request and map the reply to a Completion.
        Inputs/Outputs: Input is a CompletionRequest; output is text, tool calls and usage.
        Side Effects / State: One network call to the Gemini API.
        Dependencies: Uses to_gemini_contents, parse_response and _classify_error.
        Failure Modes: Credential and content-policy failures raise FatalCompletionError;
            timeouts, 5xx and quota errors raise TransientCompletionError.
        If Removed: Turns cannot reach the language model.
        Testing Notes: Feed a stubbed GenerativeModel and check error classification.
        """
        # Split system prompt from the transcript and build call kwargs.
        model_name = _normalize_model_name(request.model) or self._default_model
        system_instruction, contents = to_gemini_contents(request.messages)
        model = genai.GenerativeModel(model_name, system_instruction=system_instruction or None)

        kwargs: Dict[str, Any] = {
            "generation_config": {
                "temperature": request.temperature,
                "max_output_tokens": request.max_output_tokens,
            },
            "safety_settings": DEFAULT_SAFETY_SETTINGS,
        }
        if request.tools:
            kwargs["tools"] = [{"function_declarations": request.tools}]
            if not request.tools_enabled:
                kwargs["tool_config"] = TOOLS_DISABLED_CONFIG

        try:
            response = await model.generate_content_async(contents, **kwargs)
        except Exception as exc:
            raise _classify_error(exc) from exc
        return parse_response(response)


def to_gemini_contents(messages: List[ChatMessage]) -> Tuple[str, List[Dict[str, Any]]]:
    """Purpose: Convert chat messages into Gemini contents plus a system instruction.
    Inputs/Outputs: Input is the transcript; output is (system_text, contents list).
    Side Effects / State: None.
    Dependencies: Used by GeminiCompletionService.send.
    Failure Modes: Empty messages are skipped; consecutive same-role entries merge so
        several function responses travel in one turn.
    If Removed: Tool results would never be fed back to the model.
    Testing Notes: A tool message becomes a function_response part on a user turn.
    """
    # Map roles: system -> instruction, assistant -> model, tool -> user function_response.
    system_parts: List[str] = []
    contents: List[Dict[str, Any]] = []
    for message in messages:
        if message.role == SYSTEM:
            if message.content:
                system_parts.append(message.content)
            continue
        parts: List[Dict[str, Any]] = []
        if message.role == TOOL:
            role = "user"
            response = message.tool_result if message.tool_result is not None else {"content": message.content}
            parts.append({"function_response": {"name": message.name or "tool", "response": response}})
        elif message.role == ASSISTANT:
            role = "model"
            if message.content:
                parts.append({"text": message.content})
            for call in message.tool_calls:
                parts.append({"function_call": {"name": call.name, "args": call.arguments}})
        else:
            role = "user"
            if message.content:
                parts.append({"text": message.content})
        if not parts:
            continue
        if contents and contents[-1]["role"] == role:
            contents[-1]["parts"].extend(parts)
        else:
            contents.append({"role": role, "parts": parts})
    return "\n\n".join(system_parts), contents


def parse_response(response: Any) -> Completion:
    """Purpose: Extract text, function calls and token usage from a Gemini response.
    Inputs/Outputs: Input is a GenerateContentResponse; output is a Completion.
    Side Effects / State: None.
    Dependencies: Reads candidates, prompt_feedback and usage_metadata.
    Failure Modes: Blocked prompts or safety stops raise FatalCompletionError.
    If Removed: Responses cannot be mapped into the pipeline contract.
    Testing Notes: Use a namespace stub with candidates/parts to cover both branches.
    """
    # Reject blocked prompts before reading candidates.
    feedback = getattr(response, "prompt_feedback", None)
    if feedback is not None and getattr(feedback, "block_reason", 0):
        raise FatalCompletionError("prompt blocked by content policy", code="content_policy")
    candidates = list(getattr(response, "candidates", None) or [])
    if not candidates:
        raise TransientCompletionError("completion returned no candidates")
    candidate = candidates[0]
    if getattr(candidate, "finish_reason", 0) == _SAFETY_FINISH_REASON:
        raise FatalCompletionError("reply stopped by content policy", code="content_policy")

    texts: List[str] = []
    tool_calls: List[ToolCall] = []
    content = getattr(candidate, "content", None)
    for part in getattr(content, "parts", None) or []:
        function_call = getattr(part, "function_call", None)
        if function_call is not None and getattr(function_call, "name", ""):
            tool_calls.append(
                ToolCall(
                    id=f"call_{len(tool_calls)}_{uuid.uuid4().hex[:8]}",
                    name=function_call.name,
                    arguments=_to_plain(getattr(function_call, "args", None)),
                )
            )
            continue
        text = getattr(part, "text", "")
        if text:
            texts.append(text)

    usage = getattr(response, "usage_metadata", None)
    tokens_used = int(getattr(usage, "total_token_count", 0) or 0)
    return Completion(text="".join(texts).strip(), tool_calls=tool_calls, tokens_used=tokens_used)


def _to_plain(value: Any) -> Any:
    # Proto map/repeated composites -> dict/list.
    if value is None:
        return {}
    if isinstance(value, dict) or hasattr(value, "items"):
        return {str(key): _to_plain_value(item) for key, item in value.items()}
    return {}


def _to_plain_value(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, dict) or hasattr(value, "items"):
        return {str(key): _to_plain_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)) or hasattr(value, "__iter__"):
        return [_to_plain_value(item) for item in value]
    return value


def _classify_error(exc: Exception) -> Exception:
    if isinstance(exc, (FatalCompletionError, TransientCompletionError)):
        return exc
    if isinstance(exc, _FATAL_ERRORS):
        return FatalCompletionError(str(exc), code="invalid_credentials")
    if isinstance(exc, google_exceptions.InvalidArgument) and "api key" in str(exc).lower():
        return FatalCompletionError(str(exc), code="invalid_credentials")
    if isinstance(exc, (BlockedPromptException, StopCandidateException)):
        return FatalCompletionError(str(exc), code="content_policy")
    if isinstance(exc, _TRANSIENT_ERRORS):
        return TransientCompletionError(str(exc))
    return TransientCompletionError(f"{type(exc).__name__}: {exc}")


def _normalize_model_name(name: Optional[str]) -> str:
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned
