"""
Quiz session controller for the Guess Quiz Bot.
Drives each user's game from the mode menu to the final summary.
"""
import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Set

from .choice_builder import build_choices
from .collage import CollageCompositor
from .config_manager import ConfigManager
from .content_index import ContentIndex
from .dispatcher import DeliveryError, Dispatcher, RecipientUnreachableError
from .models import (
    BATCH_ALL, Button, GameMode, GameSession, MediaItem, MediaKind, PendingSelection,
    QuizEvent, QuizSettings, SelectBatchSize, SelectRoundCount, ShowMenu, Start, SubmitAnswer
)
from .quiz_engine import QuizEngine
from .session_store import SessionStore
from .stats import StatsAggregator

ButtonRows = List[List[Button]]


class QuizChannel(Protocol):
    """Outbound side of the delivery channel for one chat."""

    async def send_text(self, text: str, buttons: Optional[ButtonRows] = None) -> Any:
        ...

    async def send_photo(self, image_bytes: bytes, filename: str, caption: str,
                         buttons: Optional[ButtonRows] = None) -> Any:
        ...

    async def send_media_group(self, items: Sequence[MediaItem]) -> List[Any]:
        ...

    async def edit_markup(self, message_ref: Any, buttons: Optional[ButtonRows] = None) -> None:
        ...


class QuizController:
    """
    Orchestrates game sessions for every user.

    Events for one user are handled under that user's lock. Stats writes and
    delayed round draws run as background tasks; ``drain`` waits for them.
    """

    def __init__(
        self,
        content_index: ContentIndex,
        config_manager: ConfigManager,
        stats: Optional[Dict[GameMode, StatsAggregator]] = None,
        dispatcher: Optional[Dispatcher] = None,
        session_store: Optional[SessionStore] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        """
        Initialize the quiz controller.

        Args:
            content_index: Source of entities and media
            config_manager: Instance for managing configuration
            stats: Stats aggregator per game mode
            dispatcher: Retry wrapper applied to every outbound call
            session_store: Registry of active sessions
            rng: Random source shared by draws, choices and collages
            sleep: Awaitable used for the pacing delays
        """
        self.logger = logging.getLogger(__name__)
        self.content_index = content_index
        self.config_manager = config_manager
        self.stats = stats or {}
        self.sessions = session_store or SessionStore()
        self.rng = rng or random.Random()

        settings = config_manager.get_quiz_settings()
        self.dispatcher = dispatcher or Dispatcher(max_attempts=settings.max_send_attempts)
        self.engine = QuizEngine(rng=self.rng, cold_start_rounds=settings.cold_start_rounds)
        self.compositor = CollageCompositor(tile_size=settings.tile_size, rng=self.rng)
        self._sleep = sleep
        self._background_tasks: Set[asyncio.Task] = set()

        self.logger.info("QuizController initialized")

    @property
    def settings(self) -> QuizSettings:
        return self.config_manager.get_quiz_settings()

    async def handle_event(self, event: QuizEvent, channel: Optional[QuizChannel] = None) -> None:
        """
        Process one inbound event.

        Events that do not fit the user's current state are ignored. If the
        user turns out to be unreachable the session is dropped silently.

        Args:
            event: Decoded user action
            channel: Chat to answer in; required for ``ShowMenu`` and ``Start``
        """
        user_id = event.user_id
        async with self.sessions.serialized(user_id):
            try:
                if isinstance(event, ShowMenu):
                    await self._show_menu(event, self._require_channel(channel))
                elif isinstance(event, Start):
                    await self._start(event, self._require_channel(channel))
                elif isinstance(event, SelectRoundCount):
                    await self._select_round_count(event)
                elif isinstance(event, SelectBatchSize):
                    await self._select_batch_size(event)
                elif isinstance(event, SubmitAnswer):
                    await self._submit_answer(event)
                else:
                    raise TypeError(f"Unsupported event: {event!r}")
            except RecipientUnreachableError:
                self._abandon(user_id, "recipient unreachable")

    def _require_channel(self, channel: Optional[QuizChannel]) -> QuizChannel:
        if channel is None:
            raise ValueError("A channel is required to open a menu or start a game")
        return channel

    async def _show_menu(self, event: ShowMenu, channel: QuizChannel) -> None:
        buttons = [[
            Button("Avatars", Start(event.user_id, GameMode.AVATAR)),
            Button("Arts", Start(event.user_id, GameMode.ART)),
        ]]
        await self.dispatcher.send(
            channel.send_text,
            "🎮 Pick a game: guess the channel by its avatar, or guess the artist by their artworks.",
            buttons
        )

    async def _start(self, event: Start, channel: QuizChannel) -> None:
        index = self.content_index.build_index(event.mode)
        if not index:
            self.sessions.delete(event.user_id)
            self.logger.warning(f"No content for {event.mode.value} mode, user {event.user_id} cannot start")
            folder = "avatars" if event.mode is GameMode.AVATAR else "arts"
            await self.dispatcher.send(channel.send_text, f"❌ There are no suitable pictures in the {folder} folder!")
            return

        session = GameSession(user_id=event.user_id, mode=event.mode, index=index, channel=channel)
        self.sessions.set(session)

        options = self.engine.round_count_options(self.config_manager.get_round_options(event.mode), len(index))
        buttons = [
            Button(f"All {n}" if n == len(index) else f"{n} rounds", SelectRoundCount(event.user_id, n))
            for n in options
        ]
        rows = [buttons[i:i + 2] for i in range(0, len(buttons), 2)]
        session.prompt_ref = await self.dispatcher.send(channel.send_text, "🎮 Choose how many rounds to play:", rows)

        self.logger.info(
            f"Created {event.mode.value} session for user {event.user_id} with {len(index)} entities",
            extra={
                'event_type': 'session_created',
                'user_id': event.user_id,
                'mode': event.mode.value,
                'entity_count': len(index),
                'timestamp': time.time()
            }
        )

    async def _select_round_count(self, event: SelectRoundCount) -> None:
        session = self.sessions.get(event.user_id)
        if session is None or session.pending is not PendingSelection.AWAITING_ROUND_COUNT:
            self.logger.debug(f"Ignoring round count selection from user {event.user_id}")
            return
        if event.rounds < 1:
            self.logger.warning(f"Ignoring invalid round count {event.rounds} from user {event.user_id}")
            return

        session.total_rounds = event.rounds
        session.score = 0
        session.current_round = 0
        session.used_entities.clear()
        session.last_entity = None
        await self._clear_prompt(session)

        if session.mode is GameMode.AVATAR:
            session.pending = PendingSelection.NONE
            await self.dispatcher.send(session.channel.send_text, f"🎮 The game begins! Rounds: {event.rounds}")
            await self._present_next_round(session)
            return

        session.pending = PendingSelection.AWAITING_BATCH_SIZE
        buttons = [
            Button("All" if size == BATCH_ALL else str(size), SelectBatchSize(event.user_id, size))
            for size in self.settings.batch_size_options
        ]
        rows = [buttons[i:i + 2] for i in range(0, len(buttons), 2)]
        session.prompt_ref = await self.dispatcher.send(
            session.channel.send_text,
            f"🎮 Rounds: {event.rounds}. How many artworks of each artist should be shown? "
            f"Fewer artworks make it harder; \"All\" shows everything the artist has.",
            rows
        )

    async def _select_batch_size(self, event: SelectBatchSize) -> None:
        session = self.sessions.get(event.user_id)
        if session is None or session.pending is not PendingSelection.AWAITING_BATCH_SIZE:
            self.logger.debug(f"Ignoring batch size selection from user {event.user_id}")
            return

        size = event.size
        if size != BATCH_ALL:
            if not isinstance(size, int) or size < 1:
                self.logger.warning(f"Ignoring invalid batch size {size!r} from user {event.user_id}")
                return
            size = min(size, 3)

        session.entities_per_round = size
        session.pending = PendingSelection.NONE
        await self._clear_prompt(session)

        task = (
            "Task: guess the artist from all of their artworks"
            if size == BATCH_ALL
            else f"Task: guess the artist from {size} artwork(s)"
        )
        await self.dispatcher.send(session.channel.send_text, task)
        self._schedule_next_round(session, self.settings.batch_start_delay)

    async def _present_next_round(self, session: GameSession) -> None:
        """Draw the next entity and send its round."""
        show_counts = await self._show_counts(session)
        entity_id = self.engine.draw_next_entity(session, show_counts)

        session.current_entity = entity_id
        session.current_choices = None
        session.current_image = None
        items = session.index.get(entity_id, [])
        if session.mode is GameMode.AVATAR:
            session.current_media = list(items[:1])
        else:
            session.current_media = self.engine.select_media(items, session.entities_per_round)

        if not session.current_media:
            self.logger.error(f"No media for entity {entity_id}, ending session for user {session.user_id}")
            self.sessions.delete(session.user_id)
            await self.dispatcher.send(session.channel.send_text, "❌ This author has no pictures.")
            return

        try:
            await self.present_round(session)
        except Exception:
            # A half-sent round can never be answered
            if self.sessions.get(session.user_id) is session:
                self.sessions.delete(session.user_id)
                self.logger.warning(f"Round could not be delivered, ending session for user {session.user_id}")
            raise

    async def present_round(self, session: GameSession) -> None:
        """
        Send the current round. Choices and the collage are generated on the
        first render only, so rendering again shows identical options.
        """
        if session.mode is GameMode.AVATAR:
            await self._present_avatar_round(session)
        else:
            await self._present_art_round(session)
        session.awaiting_answer = True

        self.logger.info(
            f"Presented round {session.current_round + 1}/{session.total_rounds} to user {session.user_id}",
            extra={
                'event_type': 'round_presented',
                'user_id': session.user_id,
                'round': session.current_round + 1,
                'entity_id': session.current_entity,
                'timestamp': time.time()
            }
        )

    async def _present_avatar_round(self, session: GameSession) -> None:
        if session.current_choices is None:
            collage = self.compositor.compose(
                session.current_entity,
                session.entity_ids,
                self.engine.image_paths(session.index)
            )
            session.current_choices = collage.entity_ids
            session.current_image = collage.image_bytes

        token = session.round_token
        buttons = [[
            Button(str(position), SubmitAnswer(session.user_id, token, position))
            for position in range(1, len(session.current_choices) + 1)
        ]]
        label = self.content_index.display_label(session.current_entity)
        caption = f"Round {session.current_round + 1}/{session.total_rounds}\nPick the avatar of: **{label}**"
        session.prompt_ref = await self.dispatcher.send(
            session.channel.send_photo,
            session.current_image,
            "collage.jpg",
            caption,
            buttons
        )

    async def _present_art_round(self, session: GameSession) -> None:
        if session.current_choices is None:
            session.current_choices = build_choices(session.current_entity, session.entity_ids, self.rng)

        await self._send_media(session, session.current_media)

        token = session.round_token
        buttons = [
            [Button(self.content_index.display_label(entity_id), SubmitAnswer(session.user_id, token, position))]
            for position, entity_id in enumerate(session.current_choices, start=1)
        ]
        session.prompt_ref = await self.dispatcher.send(
            session.channel.send_text,
            f"Round {session.current_round + 1}/{session.total_rounds}: who made these artworks?",
            buttons
        )

    async def _send_media(self, session: GameSession, items: List[MediaItem]) -> None:
        """Send a media group, falling back to smaller sends if it is rejected."""
        try:
            await self.dispatcher.send(session.channel.send_media_group, items)
            return
        except DeliveryError:
            raise
        except Exception as e:
            self.logger.warning(f"Media group rejected for user {session.user_id}, sending separately: {e}")

        videos = [item for item in items if item.kind is MediaKind.VIDEO]
        photos = [item for item in items if item.kind is MediaKind.IMAGE]
        for video in videos:
            await self.dispatcher.send(session.channel.send_media_group, [video])
        if not photos:
            return
        try:
            await self.dispatcher.send(session.channel.send_media_group, photos)
        except DeliveryError:
            raise
        except Exception as e:
            self.logger.warning(f"Photo group rejected for user {session.user_id}, sending one by one: {e}")
            for photo in photos:
                await self.dispatcher.send(session.channel.send_media_group, [photo])

    async def _submit_answer(self, event: SubmitAnswer) -> None:
        session = self.sessions.get(event.user_id)
        if session is None:
            self.logger.debug(f"Ignoring answer from user {event.user_id} without a session")
            return
        if not session.awaiting_answer or event.round_token != session.round_token:
            self.logger.debug(f"Ignoring stale answer from user {event.user_id} for round {event.round_token}")
            return
        if not 1 <= event.position <= len(session.current_choices):
            self.logger.warning(f"Ignoring answer from user {event.user_id} for unknown position {event.position}")
            return

        entity_id = session.current_entity
        was_correct = session.current_choices[event.position - 1] == entity_id
        label = self.content_index.display_label(entity_id)
        correct_position = session.current_choices.index(entity_id) + 1

        session.awaiting_answer = False
        if was_correct:
            session.score += 1
        session.current_round += 1
        session.last_entity = entity_id
        self._record_outcome_later(session.mode, entity_id, label, was_correct)

        self.logger.info(
            f"User {event.user_id} answered round {session.current_round}/{session.total_rounds}: "
            f"{'correct' if was_correct else 'wrong'}",
            extra={
                'event_type': 'answer_submitted',
                'user_id': event.user_id,
                'entity_id': entity_id,
                'correct': was_correct,
                'score': session.score,
                'timestamp': time.time()
            }
        )

        await self._clear_prompt(session)
        if session.mode is GameMode.AVATAR:
            outcome = "🎉 Correct!" if was_correct else f"❌ Wrong! The right answer was {correct_position}"
        else:
            outcome = (
                f"🎉 Correct, the artist is @{entity_id}" if was_correct
                else f"❌ Wrong, the artist is @{entity_id}"
            )
        await self.dispatcher.send(session.channel.send_text, outcome)

        if session.mode is GameMode.ART:
            remaining = max(0, session.total_rounds - session.current_round)
            await self.dispatcher.send(
                session.channel.send_text,
                f"Played: {session.current_round}. Correct: {session.score}. Remaining: {remaining}"
            )

        if session.is_finished:
            await self._finish(session)
            return

        self._schedule_next_round(session, self.config_manager.get_next_round_delay(session.mode))

    async def _finish(self, session: GameSession) -> None:
        self.sessions.delete(session.user_id)
        summary = f"🏁 Game over! Your result: {session.score} of {session.total_rounds}"
        if session.mode is GameMode.ART:
            if session.entities_per_round == BATCH_ALL:
                summary += "\nWith all available artworks"
            else:
                summary += f"\nArtworks shown per artist: {session.entities_per_round}"

        buttons = [[
            Button("🔁 Play again", Start(session.user_id, session.mode)),
            Button("Choose another game", ShowMenu(session.user_id)),
        ]]
        self.logger.info(
            f"Session finished for user {session.user_id}: {session.score}/{session.total_rounds}",
            extra={
                'event_type': 'session_finished',
                'user_id': session.user_id,
                'score': session.score,
                'total_rounds': session.total_rounds,
                'timestamp': time.time()
            }
        )
        await self.dispatcher.send(session.channel.send_text, summary, buttons)

    async def _clear_prompt(self, session: GameSession) -> None:
        """Remove the buttons of the last prompt; failures only cost cosmetics."""
        message_ref, session.prompt_ref = session.prompt_ref, None
        if message_ref is None:
            return
        try:
            await self.dispatcher.send(session.channel.edit_markup, message_ref, None)
        except DeliveryError:
            raise
        except Exception as e:
            self.logger.warning(f"Could not remove buttons for user {session.user_id}: {e}")

    async def _show_counts(self, session: GameSession) -> Optional[Dict[str, int]]:
        settings = self.settings
        if not settings.use_show_counts or session.current_round >= settings.cold_start_rounds:
            return None
        aggregator = self.stats.get(session.mode)
        if aggregator is None:
            return None
        try:
            return await aggregator.show_counts()
        except Exception as e:
            self.logger.warning(f"Show counts unavailable, drawing at random: {e}")
            return None

    def _schedule_next_round(self, session: GameSession, delay: float) -> None:
        self._spawn(self._next_round_after(session, delay), f"next-round-{session.user_id}")

    async def _next_round_after(self, session: GameSession, delay: float) -> None:
        await self._sleep(delay)
        async with self.sessions.serialized(session.user_id):
            if self.sessions.get(session.user_id) is not session:
                return
            if session.awaiting_answer or session.is_finished:
                return
            try:
                await self._present_next_round(session)
            except RecipientUnreachableError:
                self._abandon(session.user_id, "recipient unreachable")

    def _record_outcome_later(self, mode: GameMode, entity_id: str, label: str, was_correct: bool) -> None:
        aggregator = self.stats.get(mode)
        if aggregator is None:
            return
        self._spawn(aggregator.record_outcome(entity_id, label, was_correct), f"stats-{entity_id}")

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error(f"Background task {task.get_name()} failed: {error}", exc_info=error)

    async def drain(self) -> None:
        """Wait until pending stats writes and scheduled rounds have run."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    def _abandon(self, user_id: int, reason: str) -> None:
        removed = self.sessions.delete(user_id)
        self.logger.info(
            f"Abandoned session for user {user_id}: {reason}",
            extra={
                'event_type': 'session_abandoned',
                'user_id': user_id,
                'had_session': removed,
                'reason': reason,
                'timestamp': time.time()
            }
        )

    def get_session(self, user_id: int) -> Optional[GameSession]:
        return self.sessions.get(user_id)

    async def stats_summary(self) -> Dict[GameMode, Dict[str, float]]:
        """Rounds played per mode, averaged over the entities currently on disk."""
        summary = {}
        for mode, aggregator in self.stats.items():
            entity_count = len(self.content_index.build_index(mode))
            summary[mode] = await aggregator.summary(entity_count=entity_count)
        return summary
