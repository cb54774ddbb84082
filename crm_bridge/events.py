"""
Gateway event taxonomy.

The gateway names events either in upper snake case (``MESSAGES_UPSERT``)
or in dotted lower case (``messages.upsert``). Both spellings classify to
the same EventKind; anything else is rejected with the supported list.
"""

from enum import Enum
from typing import Optional

from crm_bridge.errors import UnknownEventKind


class EventKind(str, Enum):
    MESSAGES_UPSERT = "MESSAGES_UPSERT"
    MESSAGES_UPDATE = "MESSAGES_UPDATE"
    MESSAGES_DELETE = "MESSAGES_DELETE"
    SEND_MESSAGE = "SEND_MESSAGE"
    CONNECTION_UPDATE = "CONNECTION_UPDATE"
    QRCODE_UPDATED = "QRCODE_UPDATED"
    APPLICATION_STARTUP = "APPLICATION_STARTUP"
    CONTACTS_SET = "CONTACTS_SET"
    CONTACTS_UPSERT = "CONTACTS_UPSERT"
    CONTACTS_UPDATE = "CONTACTS_UPDATE"
    CHATS_SET = "CHATS_SET"
    CHATS_UPSERT = "CHATS_UPSERT"
    CHATS_UPDATE = "CHATS_UPDATE"
    CHATS_DELETE = "CHATS_DELETE"
    GROUPS_UPSERT = "GROUPS_UPSERT"
    GROUP_UPDATE = "GROUP_UPDATE"
    GROUP_PARTICIPANTS_UPDATE = "GROUP_PARTICIPANTS_UPDATE"
    PRESENCE_UPDATE = "PRESENCE_UPDATE"
    CALL = "CALL"
    NEW_JWT_TOKEN = "NEW_JWT_TOKEN"
    TYPEBOT_START = "TYPEBOT_START"
    TYPEBOT_CHANGE_STATUS = "TYPEBOT_CHANGE_STATUS"

    @property
    def slug(self) -> str:
        """Dashed lower-case name used in realtime payloads, e.g. ``chats-update``."""
        return self.value.lower().replace("_", "-")


SUPPORTED_EVENTS: list[str] = [kind.value for kind in EventKind]

# Kinds carrying a message body that goes through normalize/resolve/write
MESSAGE_KINDS = frozenset({EventKind.MESSAGES_UPSERT, EventKind.SEND_MESSAGE})

_LOOKUP = {kind.value: kind for kind in EventKind}


def classify(event: Optional[str]) -> EventKind:
    """
    Map a raw event name to its EventKind.

    Raises:
        UnknownEventKind: name is missing or outside the taxonomy
    """
    if isinstance(event, str):
        key = event.strip().upper().replace(".", "_").replace("-", "_")
        kind = _LOOKUP.get(key)
        if kind is not None:
            return kind
    raise UnknownEventKind(event, SUPPORTED_EVENTS)
