"""Google Gemini provider via the Gemini REST API (API key).

Keeps a short rolling history per conversation in memory; history is lost
on restart like the rest of the in-process state.
"""

import base64
import logging
from collections import OrderedDict, deque
from typing import Optional

import httpx

from .provider import (
    FunctionCall,
    LLMAuthError,
    LLMBadRequestError,
    LLMEmptyResponseError,
    LLMProvider,
    LLMRateLimitError,
    LLMResponse,
    MediaPart,
)

logger = logging.getLogger("wassist.llm.gemini")

_GEMINI_API = "https://generativelanguage.googleapis.com/v1beta"
_REQUEST_TIMEOUT = 120

# Function declarations exposed to the model. Handled in handler.py.
TOOL_DECLARATIONS = [
    {
        "name": "create_schedule",
        "description": (
            "Schedule a message to be sent later, once or on recurring weekdays. "
            "Use when the user asks to send something at a specific time."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "targetName": {"type": "string", "description": "Group or contact name, or 'self' for this chat"},
                "hour": {"type": "number", "description": "Hour 0-23"},
                "minute": {"type": "number", "description": "Minute 0-59"},
                "days": {
                    "type": "array",
                    "items": {"type": "integer"},
                    "description": "Weekdays for a recurring schedule, 0=Sunday..6=Saturday",
                },
                "oneTimeDate": {"type": "string", "description": "YYYY-MM-DD for a one-time schedule"},
                "message": {"type": "string", "description": "Message text, or the generation instruction when useAi is true"},
                "useAi": {"type": "boolean", "description": "Generate fresh content every time"},
            },
            "required": ["targetName", "hour", "message", "useAi"],
        },
    },
    {
        "name": "send_message",
        "description": (
            "Relay a message from the user to another contact or group. Replies "
            "from the recipient are routed back to the user."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "targetName": {"type": "string", "description": "Contact name, group name or phone number"},
                "messageContent": {"type": "string", "description": "Message text or topic to write about"},
                "generateContent": {"type": "boolean", "description": "Write the message from the topic"},
                "timing": {"type": "string", "description": "'now' or 'scheduled'"},
                "scheduledDate": {"type": "string", "description": "YYYY-MM-DD when timing is scheduled"},
                "scheduledHour": {"type": "number"},
                "scheduledMinute": {"type": "number"},
            },
            "required": ["targetName", "messageContent", "generateContent"],
        },
    },
]


class GeminiProvider(LLMProvider):
    """Gemini generateContent driver."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gemini-2.5-flash",
        system_prompt: str = "",
        history_turns: int = 20,
        max_conversations: int = 500,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.system_prompt = system_prompt
        self._history_turns = history_turns
        self._max_conversations = max_conversations
        # least recently used conversation first
        self._history: OrderedDict[str, deque] = OrderedDict()
        self._client = client or httpx.AsyncClient(timeout=_REQUEST_TIMEOUT)

    async def close(self) -> None:
        await self._client.aclose()

    # ── History ───────────────────────────────────────────────

    def _get_history(self, key: str) -> deque:
        history = self._history.get(key)
        if history is None:
            history = deque(maxlen=self._history_turns * 2)
            self._history[key] = history
            while len(self._history) > self._max_conversations:
                self._history.popitem(last=False)
        else:
            self._history.move_to_end(key)
        return history

    def clear_history(self, conversation_key: str) -> None:
        self._history.pop(conversation_key, None)
        logger.info(f"Cleared conversation history for {conversation_key}")

    # ── Requests ──────────────────────────────────────────────

    async def _post(self, body: dict) -> dict:
        url = f"{_GEMINI_API}/models/{self.model}:generateContent"
        resp = await self._client.post(url, json=body, params={"key": self.api_key or ""})
        if resp.status_code == 429:
            raise LLMRateLimitError(resp.text[:200])
        if resp.status_code in (401, 403):
            raise LLMAuthError(resp.text[:200])
        if resp.status_code == 400:
            raise LLMBadRequestError(resp.text[:200])
        resp.raise_for_status()
        return resp.json()

    @staticmethod
    def _parse(data: dict) -> LLMResponse:
        candidates = data.get("candidates") or []
        if not candidates:
            raise LLMEmptyResponseError("No candidates in Gemini response")
        parts = candidates[0].get("content", {}).get("parts", [])

        text_parts = []
        for part in parts:
            if "functionCall" in part:
                fc = part["functionCall"]
                return LLMResponse(function_call=FunctionCall(name=fc.get("name", ""), args=fc.get("args") or {}))
            if part.get("thought"):
                continue
            if "text" in part and part["text"].strip():
                text_parts.append(part["text"])

        text = "".join(text_parts).strip()
        if not text:
            raise LLMEmptyResponseError("Gemini returned an empty response")
        return LLMResponse(text=text)

    async def generate_response(
        self,
        conversation_key: str,
        text: str,
        system_prompt: Optional[str] = None,
        media: Optional[MediaPart] = None,
        allow_tools: bool = True,
    ) -> LLMResponse:
        history = self._get_history(conversation_key)

        user_parts: list[dict] = []
        if media is not None:
            user_parts.append({
                "inlineData": {
                    "mimeType": media.mime_type,
                    "data": base64.b64encode(media.data).decode("ascii"),
                }
            })
        if text:
            user_parts.append({"text": text})

        body: dict = {
            "contents": [*history, {"role": "user", "parts": user_parts}],
            "systemInstruction": {"parts": [{"text": system_prompt or self.system_prompt}]},
        }
        if allow_tools:
            body["tools"] = [{"functionDeclarations": TOOL_DECLARATIONS}]

        response = self._parse(await self._post(body))

        if not response.is_function_call:
            # Media is not replayed in later turns; keep the text side only.
            history.append({"role": "user", "parts": [{"text": text or "[media]"}]})
            history.append({"role": "model", "parts": [{"text": response.text}]})
        return response

    async def generate_text(self, prompt: str) -> str:
        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "systemInstruction": {"parts": [{"text": self.system_prompt}]},
        }
        return self._parse(await self._post(body)).text
