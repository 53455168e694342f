"""Inbound message normalization.

The transport delivers loosely-shaped message dicts where any of a dozen
optional fields may carry the payload, sometimes nested inside wrapper
types (ephemeral, view-once, edited). normalize_message() is the single
place that knows about those shapes; everything past it works with
InboundMessage and one content variant.
"""

import re
from dataclasses import dataclass, field
from typing import Optional, Union

GROUP_SUFFIX = "@g.us"
USER_SUFFIX = "@s.whatsapp.net"

# Wrapper types whose payload lives under ["message"]
_WRAPPER_KEYS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
    "editedMessage",
)
_MAX_UNWRAP_DEPTH = 5

_DEVICE_SUFFIX_RE = re.compile(r":.*@")


def is_group_jid(jid: str) -> bool:
    return bool(jid) and jid.endswith(GROUP_SUFFIX)


def normalize_jid(jid: Optional[str]) -> Optional[str]:
    """Strip the device part: '123:45@s.whatsapp.net' → '123@s.whatsapp.net'."""
    if not jid:
        return jid
    return _DEVICE_SUFFIX_RE.sub("@", jid)


def jid_from_phone(phone: str) -> str:
    """Build a user JID from a phone number in any common notation."""
    digits = re.sub(r"\D", "", phone)
    return f"{digits}{USER_SUFFIX}"


# ============================================================
# CONTENT VARIANTS
# ============================================================

@dataclass(frozen=True)
class TextContent:
    text: str
    kind: str = field(default="text", init=False)


@dataclass(frozen=True)
class AudioContent:
    descriptor: dict = field(hash=False, compare=False)
    mimetype: str = "audio/ogg; codecs=opus"
    seconds: Optional[int] = None
    kind: str = field(default="audio", init=False)


@dataclass(frozen=True)
class ImageContent:
    descriptor: dict = field(hash=False, compare=False)
    mimetype: str = "image/jpeg"
    caption: str = ""
    kind: str = field(default="image", init=False)


@dataclass(frozen=True)
class DocumentContent:
    descriptor: dict = field(hash=False, compare=False)
    mimetype: str = "application/pdf"
    file_name: str = "document"
    caption: str = ""
    kind: str = field(default="document", init=False)


@dataclass(frozen=True)
class UnsupportedContent:
    """Stickers, reactions, protocol messages: carried through, never answered."""
    types: tuple = ()
    kind: str = field(default="unsupported", init=False)


Content = Union[TextContent, AudioContent, ImageContent, DocumentContent, UnsupportedContent]

MEDIA_KINDS = ("audio", "image", "document")


@dataclass
class InboundMessage:
    """Canonical form of one inbound chat message."""
    message_id: Optional[str]
    chat_jid: str
    sender_jid: str
    content: Content
    from_me: bool = False
    push_name: str = ""
    quoted_participant: Optional[str] = None
    quoted_message_id: Optional[str] = None
    mentioned_jids: tuple = ()
    timestamp: Optional[int] = None
    raw: dict = field(default_factory=dict, repr=False)

    @property
    def is_group(self) -> bool:
        return is_group_jid(self.chat_jid)

    @property
    def text(self) -> str:
        """Text body or media caption; empty for captionless media."""
        content = self.content
        if isinstance(content, TextContent):
            return content.text
        if isinstance(content, (ImageContent, DocumentContent)):
            return content.caption
        return ""

    @property
    def is_reply(self) -> bool:
        return bool(self.quoted_message_id)


# ============================================================
# NORMALIZATION
# ============================================================

def unwrap_message_content(content: Optional[dict]) -> Optional[dict]:
    """Peel transport wrapper types until the real payload is reached."""
    depth = 0
    while content and depth < _MAX_UNWRAP_DEPTH:
        for key in _WRAPPER_KEYS:
            inner = content.get(key)
            if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
                content = inner["message"]
                break
        else:
            return content
        depth += 1
    return content


def _context_info(content: dict) -> dict:
    for key in ("extendedTextMessage", "audioMessage", "imageMessage", "documentMessage", "videoMessage"):
        part = content.get(key)
        if isinstance(part, dict) and isinstance(part.get("contextInfo"), dict):
            return part["contextInfo"]
    return {}


def _extract_content(content: dict) -> Content:
    if content.get("conversation"):
        return TextContent(text=content["conversation"])

    extended = content.get("extendedTextMessage")
    if isinstance(extended, dict) and extended.get("text"):
        return TextContent(text=extended["text"])

    audio = content.get("audioMessage")
    if isinstance(audio, dict):
        return AudioContent(
            descriptor=audio,
            mimetype=audio.get("mimetype") or "audio/ogg; codecs=opus",
            seconds=audio.get("seconds"),
        )

    image = content.get("imageMessage")
    if isinstance(image, dict):
        return ImageContent(
            descriptor=image,
            mimetype=image.get("mimetype") or "image/jpeg",
            caption=image.get("caption") or "",
        )

    document = content.get("documentMessage")
    if isinstance(document, dict):
        return DocumentContent(
            descriptor=document,
            mimetype=document.get("mimetype") or "application/pdf",
            file_name=document.get("fileName") or "document",
            caption=document.get("caption") or "",
        )

    video = content.get("videoMessage")
    if isinstance(video, dict) and video.get("caption"):
        return TextContent(text=video["caption"])

    return UnsupportedContent(types=tuple(sorted(k for k, v in content.items() if v is not None)))


def normalize_message(raw: dict) -> InboundMessage:
    """Turn a raw transport message into an InboundMessage.

    Raises ValueError when the message has no chat JID.
    """
    key = raw.get("key") or {}
    chat_jid = key.get("remoteJid") or ""
    if not chat_jid:
        raise ValueError("message without remoteJid")

    content = unwrap_message_content(raw.get("message")) or {}
    context = _context_info(content)

    if is_group_jid(chat_jid):
        sender = key.get("participant") or raw.get("participant") or chat_jid
    else:
        sender = chat_jid

    timestamp = raw.get("messageTimestamp")
    try:
        timestamp = int(timestamp) if timestamp is not None else None
    except (TypeError, ValueError):
        timestamp = None

    return InboundMessage(
        message_id=key.get("id"),
        chat_jid=chat_jid,
        sender_jid=sender,
        content=_extract_content(content),
        from_me=bool(key.get("fromMe", False)),
        push_name=raw.get("pushName") or "",
        quoted_participant=context.get("participant"),
        quoted_message_id=context.get("stanzaId"),
        mentioned_jids=tuple(context.get("mentionedJid") or ()),
        timestamp=timestamp,
        raw={**raw, "message": content},
    )
