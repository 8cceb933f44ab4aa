import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from .models import CacheSnapshot, ChatMessage, Thread

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class ThreadlineSerializer:
    """Converts between cache models and their JSON representations.

    Two formats are handled here:

    - the API payloads (thread lists, thread details, chat requests)
    - the durable snapshot record written to local storage

    Timestamps travel as ISO-8601 strings in both. Decoding always goes
    through pydantic validation so every timestamp comes back as a
    ``datetime``; a bare ``json.loads`` would leave them as strings.
    """

    # --- Snapshot ---

    @staticmethod
    def dump_snapshot(snapshot: CacheSnapshot) -> str:
        return snapshot.model_dump_json(by_alias=True)

    @staticmethod
    def load_snapshot(raw: str) -> CacheSnapshot:
        """Parse a snapshot record, reconstructing every timestamp.

        Raises:
            ValueError: If the record is not a valid snapshot.
        """
        try:
            return CacheSnapshot.model_validate_json(raw)
        except ValidationError as e:
            raise ValueError(f"Invalid cache snapshot: {e}") from e

    # --- API payloads ---

    @staticmethod
    def parse_threads(payload: Dict[str, Any]) -> List[Thread]:
        """Parse the ``threads`` list of a thread-list response."""
        return ThreadlineSerializer._parse_items(
            Thread, payload.get("threads") or [], "thread"
        )

    @staticmethod
    def parse_messages(payload: Dict[str, Any]) -> List[ChatMessage]:
        """Parse the ``messages`` list of a thread-detail response.

        Messages missing an ``id`` or ``createdAt`` get a generated id and
        the current time.
        """
        return ThreadlineSerializer._parse_items(
            ChatMessage, payload.get("messages") or [], "message"
        )

    @staticmethod
    def _parse_items(model, items: Iterable[Any], kind: str) -> list:
        parsed = []
        for item in items:
            if isinstance(item, dict):
                # Explicit nulls fall back to the model defaults.
                item = {key: value for key, value in item.items() if value is not None}
            try:
                parsed.append(model.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping malformed {kind} in API response: {e}")
        return parsed

    @staticmethod
    def serialize_messages(messages: Iterable[ChatMessage]) -> List[Dict[str, Any]]:
        return [m.model_dump(mode="json", by_alias=True) for m in messages]

    @staticmethod
    def chat_request(
        messages: Iterable[ChatMessage],
        thread_id: str,
        resource_id: Optional[str],
    ) -> Dict[str, Any]:
        return {
            "messages": [m.to_prompt() for m in messages],
            "threadId": thread_id,
            "resourceId": resource_id,
        }


def dump_snapshot(snapshot: CacheSnapshot) -> str:
    return ThreadlineSerializer.dump_snapshot(snapshot)


def load_snapshot(raw: str) -> CacheSnapshot:
    return ThreadlineSerializer.load_snapshot(raw)

