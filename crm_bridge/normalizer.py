"""
Message normalization.

A MESSAGES_UPSERT item carries a ``message`` object holding exactly one of
a closed set of shapes (``conversation``, ``imageMessage``, ...). This
module turns it into a NormalizedMessage: a canonical kind, a display
text for agents, an optional media reference and a bag of kind-specific
extras. Normalization never fails; payloads it cannot describe come out
as kind ``unknown`` with a placeholder text.
"""

import logging
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Optional


logger = logging.getLogger(__name__)


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    LOCATION = "location"
    CONTACT = "contact"
    STICKER = "sticker"
    REACTION = "reaction"
    BUTTONS = "buttons"
    LIST = "list"
    BUTTON_REPLY = "button_reply"
    LIST_REPLY = "list_reply"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class MediaRef:
    url: Optional[str] = None
    mimetype: Optional[str] = None
    file_name: Optional[str] = None
    file_length: Optional[int] = None
    media_key: Optional[str] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class NormalizedMessage:
    kind: MessageKind
    display_text: str
    media: Optional[MediaRef] = None
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "displayText": self.display_text,
            "media": self.media.to_dict() if self.media else None,
            "extra": self.extra,
        }


EMPTY_TEXT = "[empty message]"
UNSUPPORTED_TEXT = "[unsupported message]"

# Envelopes that wrap the real message one level down
_WRAPPERS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "documentWithCaptionMessage",
)


def _file_length(value: Any) -> Optional[int]:
    # Some gateway versions send protobuf longs as {"low": .., "high": ..} or strings
    if isinstance(value, dict):
        value = value.get("low")
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _media(body: dict) -> MediaRef:
    return MediaRef(
        url=body.get("url"),
        mimetype=body.get("mimetype"),
        file_name=body.get("fileName"),
        file_length=_file_length(body.get("fileLength")),
        media_key=body.get("mediaKey") if isinstance(body.get("mediaKey"), str) else None,
    )


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _without_none(values: dict) -> dict:
    return {k: v for k, v in values.items() if v is not None}


def _conversation(body: Any) -> NormalizedMessage:
    return NormalizedMessage(MessageKind.TEXT, str(body))


def _extended_text(body: dict) -> NormalizedMessage:
    context = _dict(body.get("contextInfo"))
    mentions = context.get("mentionedJid")
    extra = _without_none({
        "is_forwarded": bool(context.get("isForwarded", False)),
        "mentions": list(mentions) if isinstance(mentions, list) else [],
        "quoted_message_id": context.get("stanzaId"),
        "has_quoted": bool(context.get("quotedMessage")),
        "matched_text": body.get("matchedText"),
    })
    return NormalizedMessage(MessageKind.TEXT, body.get("text") or EMPTY_TEXT, extra=extra)


def _image(body: dict) -> NormalizedMessage:
    return NormalizedMessage(
        MessageKind.IMAGE,
        body.get("caption") or "[image]",
        media=_media(body),
        extra=_without_none({"width": body.get("width"), "height": body.get("height")}),
    )


def _video(body: dict) -> NormalizedMessage:
    return NormalizedMessage(
        MessageKind.VIDEO,
        body.get("caption") or "[video]",
        media=_media(body),
        extra=_without_none({"seconds": body.get("seconds"), "gif_playback": body.get("gifPlayback")}),
    )


def _audio(body: dict) -> NormalizedMessage:
    ptt = bool(body.get("ptt", False))
    return NormalizedMessage(
        MessageKind.AUDIO,
        "[voice note]" if ptt else "[audio]",
        media=_media(body),
        extra=_without_none({"seconds": body.get("seconds"), "ptt": ptt}),
    )


def _document(body: dict) -> NormalizedMessage:
    return NormalizedMessage(
        MessageKind.DOCUMENT,
        body.get("fileName") or body.get("title") or "[document]",
        media=_media(body),
        extra=_without_none({"title": body.get("title"), "page_count": body.get("pageCount")}),
    )


def _location(body: dict) -> NormalizedMessage:
    return NormalizedMessage(
        MessageKind.LOCATION,
        body.get("name") or body.get("address") or "[location]",
        extra=_without_none({
            "latitude": body.get("degreesLatitude"),
            "longitude": body.get("degreesLongitude"),
            "address": body.get("address"),
            "url": body.get("url"),
        }),
    )


def _contact(body: dict) -> NormalizedMessage:
    name = body.get("displayName") or ""
    return NormalizedMessage(
        MessageKind.CONTACT,
        f"[contact] {name}".strip(),
        extra=_without_none({"display_name": body.get("displayName"), "vcard": body.get("vcard")}),
    )


def _sticker(body: dict) -> NormalizedMessage:
    return NormalizedMessage(
        MessageKind.STICKER,
        "[sticker]",
        media=_media(body),
        extra={"is_animated": bool(body.get("isAnimated", False))},
    )


def _reaction(body: dict) -> NormalizedMessage:
    emoji = body.get("text") or ""
    key = _dict(body.get("key"))
    return NormalizedMessage(
        MessageKind.REACTION,
        f"[reaction] {emoji}".strip(),
        extra=_without_none({
            "emoji": emoji,
            "target_message_id": key.get("id"),
            "target_jid": key.get("remoteJid"),
        }),
    )


def _buttons(body: dict) -> NormalizedMessage:
    labels = [
        _dict(button.get("buttonText")).get("displayText")
        for button in body.get("buttons") or []
        if isinstance(button, dict)
    ]
    return NormalizedMessage(
        MessageKind.BUTTONS,
        body.get("contentText") or "[buttons]",
        extra={"buttons": [label for label in labels if label]},
    )


def _list(body: dict) -> NormalizedMessage:
    return NormalizedMessage(
        MessageKind.LIST,
        body.get("description") or body.get("title") or "[list]",
        extra=_without_none({"title": body.get("title"), "button_text": body.get("buttonText")}),
    )


def _button_reply(body: dict) -> NormalizedMessage:
    button_id = body.get("selectedButtonId")
    text = body.get("selectedDisplayText") or f"[button] {button_id or ''}".strip()
    return NormalizedMessage(
        MessageKind.BUTTON_REPLY,
        text,
        extra=_without_none({"selected_button_id": button_id}),
    )


def _list_reply(body: dict) -> NormalizedMessage:
    row_id = _dict(body.get("singleSelectReply")).get("selectedRowId")
    title = body.get("title") or row_id or ""
    return NormalizedMessage(
        MessageKind.LIST_REPLY,
        f"[list] {title}".strip(),
        extra=_without_none({"selected_row_id": row_id, "title": body.get("title")}),
    )


# Precedence order: text variants, media, structured content, interactive replies
PARSERS: list[tuple[str, Callable[[Any], NormalizedMessage]]] = [
    ("conversation", _conversation),
    ("extendedTextMessage", _extended_text),
    ("imageMessage", _image),
    ("videoMessage", _video),
    ("audioMessage", _audio),
    ("documentMessage", _document),
    ("locationMessage", _location),
    ("contactMessage", _contact),
    ("stickerMessage", _sticker),
    ("reactionMessage", _reaction),
    ("buttonsMessage", _buttons),
    ("listMessage", _list),
    ("buttonsResponseMessage", _button_reply),
    ("listResponseMessage", _list_reply),
]


def _unwrap(message: dict) -> dict:
    while True:
        for wrapper in _WRAPPERS:
            inner = message.get(wrapper)
            if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
                message = inner["message"]
                break
        else:
            return message


def normalize(message: Optional[dict]) -> NormalizedMessage:
    """
    Convert a raw ``message`` object into its canonical form.

    Args:
        message: The ``message`` field of a MESSAGES_UPSERT item

    Returns:
        NormalizedMessage; kind ``unknown`` when nothing matches.
    """
    if not isinstance(message, dict) or not message:
        return NormalizedMessage(MessageKind.UNKNOWN, EMPTY_TEXT)

    message = _unwrap(message)
    for key, parser in PARSERS:
        body = message.get(key)
        if not body:
            continue
        if key != "conversation" and not isinstance(body, dict):
            continue
        try:
            result = parser(body)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Could not normalize {key}: {e}")
            return NormalizedMessage(MessageKind.UNKNOWN, UNSUPPORTED_TEXT, extra={"keys": [key]})
        if not isinstance(result.display_text, str):
            result = replace(result, display_text=str(result.display_text))
        return result

    return NormalizedMessage(
        MessageKind.UNKNOWN,
        UNSUPPORTED_TEXT,
        extra={"keys": sorted(k for k in message if k != "messageContextInfo")},
    )
