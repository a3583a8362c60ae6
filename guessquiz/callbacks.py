"""
Encoding of quiz events into Discord component ``custom_id`` strings.

The user id is never encoded; it comes from whoever pressed the button.
"""
import logging
from typing import Optional

from .models import (
    BATCH_ALL, GameMode, QuizEvent, SelectBatchSize, SelectRoundCount,
    ShowMenu, Start, SubmitAnswer
)

logger = logging.getLogger(__name__)

PREFIX = "gq"
SEPARATOR = ":"
MAX_CUSTOM_ID_LENGTH = 100


def encode_event(event: QuizEvent) -> str:
    """
    Serialize an event for a button.

    Raises:
        ValueError: For unknown events or ids longer than Discord allows
    """
    if isinstance(event, ShowMenu):
        parts = ["menu"]
    elif isinstance(event, Start):
        parts = ["start", event.mode.value]
    elif isinstance(event, SelectRoundCount):
        parts = ["rounds", str(event.rounds)]
    elif isinstance(event, SelectBatchSize):
        parts = ["batch", str(event.size)]
    elif isinstance(event, SubmitAnswer):
        parts = ["ans", event.round_token, str(event.position)]
    else:
        raise ValueError(f"Cannot encode event of type {type(event).__name__}")

    custom_id = SEPARATOR.join([PREFIX] + parts)
    if len(custom_id) > MAX_CUSTOM_ID_LENGTH:
        raise ValueError(f"custom_id too long ({len(custom_id)} > {MAX_CUSTOM_ID_LENGTH}): {custom_id}")
    return custom_id


def is_quiz_custom_id(custom_id: Optional[str]) -> bool:
    return bool(custom_id) and custom_id.startswith(PREFIX + SEPARATOR)


def decode_custom_id(custom_id: Optional[str], user_id: int) -> Optional[QuizEvent]:
    """
    Parse a ``custom_id`` produced by ``encode_event``.

    Returns:
        The event for ``user_id``, or None if the id is not ours or malformed
    """
    if not is_quiz_custom_id(custom_id):
        return None

    kind, _, rest = custom_id[len(PREFIX) + 1:].partition(SEPARATOR)
    try:
        if kind == "menu" and not rest:
            return ShowMenu(user_id=user_id)
        if kind == "start":
            return Start(user_id=user_id, mode=GameMode(rest))
        if kind == "rounds":
            return SelectRoundCount(user_id=user_id, rounds=int(rest))
        if kind == "batch":
            size = BATCH_ALL if rest == BATCH_ALL else int(rest)
            return SelectBatchSize(user_id=user_id, size=size)
        if kind == "ans":
            round_token, position = rest.split(SEPARATOR)
            if not round_token:
                raise ValueError("empty round token")
            return SubmitAnswer(user_id=user_id, round_token=round_token, position=int(position))
    except ValueError as e:
        logger.warning(f"Ignoring malformed custom_id {custom_id!r}: {e}")
        return None

    logger.warning(f"Ignoring unknown custom_id {custom_id!r}")
    return None
