"""
Unit tests for QuizController session flow.
"""
import asyncio
import random
import unittest
from unittest.mock import patch

from guessquiz.bot import build_view
from guessquiz.config_manager import ConfigManager
from guessquiz.content_index import ContentIndex
from guessquiz.dispatcher import Dispatcher, RateLimitedError
from guessquiz.models import (
    BATCH_ALL, GameMode, MediaKind, PendingSelection, SelectBatchSize, SelectRoundCount,
    ShowMenu, StatRecord, Start, SubmitAnswer
)
from guessquiz.quiz_controller import QuizController
from guessquiz.stats import InMemoryStatsStore, StatsAggregator
from tests.test_fixtures import FakeQuizChannel, SleepRecorder, TestFixtures, no_sleep

USER = 67890
OTHER_USER = 11111


class FailingStatsStore:
    """Stats store whose backend is down."""

    async def get_record(self, entity_id):
        raise ConnectionError("stats backend unavailable")

    async def upsert_record(self, record):
        raise ConnectionError("stats backend unavailable")

    async def all_records(self):
        raise ConnectionError("stats backend unavailable")


class SuspendingChannel(FakeQuizChannel):
    """Yields to the event loop before every send, like a real network call."""

    async def send_text(self, text, buttons=None):
        await asyncio.sleep(0)
        return await super().send_text(text, buttons)

    async def edit_markup(self, message_ref, buttons=None):
        await asyncio.sleep(0)
        await super().edit_markup(message_ref, buttons)


class RateLimitedPhotoChannel(FakeQuizChannel):
    """Every photo upload is rate limited."""

    async def send_photo(self, image_bytes, filename, caption, buttons=None):
        raise RateLimitedError(0.1)


class QuizControllerTestCase(unittest.IsolatedAsyncioTestCase):
    """Builds a controller over temporary asset folders and a fake channel."""

    def make_controller(self, avatars=(), arts=(), stores=None, reject_mixed_groups=False, seed=1, channel=None):
        self.root = TestFixtures.create_asset_dirs(avatars=avatars, arts=arts)
        self.addCleanup(TestFixtures.remove_tree, self.root)

        self.config_manager = ConfigManager()
        self.config_manager.set_tile_size(64)
        content_index = ContentIndex(
            avatars_directory=str(self.root / "pfps"),
            arts_directory=str(self.root / "arts")
        )
        self.stores = stores or {mode: InMemoryStatsStore() for mode in GameMode}
        stats = {mode: StatsAggregator(store) for mode, store in self.stores.items()}
        self.sleep = SleepRecorder()
        self.channel = channel or FakeQuizChannel(reject_mixed_groups=reject_mixed_groups)
        self.controller = QuizController(
            content_index,
            self.config_manager,
            stats,
            dispatcher=Dispatcher(sleep=no_sleep),
            rng=random.Random(seed),
            sleep=self.sleep
        )
        return self.controller

    async def start_art_game(self, rounds, batch_size):
        await self.controller.handle_event(Start(USER, GameMode.ART), self.channel)
        await self.controller.handle_event(SelectRoundCount(USER, rounds))
        await self.controller.handle_event(SelectBatchSize(USER, batch_size))
        await self.controller.drain()
        return self.controller.get_session(USER)

    async def answer(self, session, correct=True):
        entity_id = session.current_entity
        if correct:
            chosen = entity_id
        else:
            chosen = next(choice for choice in session.current_choices if choice != entity_id)
        position = session.current_choices.index(chosen) + 1
        await self.controller.handle_event(SubmitAnswer(USER, session.round_token, position))


class TestArtFlow(QuizControllerTestCase):

    async def test_single_entity_single_round(self):
        """One artist, one round, one artwork: the round shows index 1 and ends the game."""
        self.make_controller(arts=["alice#1.png", "alice#2.png", "alice#3.png"])

        await self.controller.handle_event(Start(USER, GameMode.ART), self.channel)
        session = self.controller.get_session(USER)
        self.assertEqual(session.pending, PendingSelection.AWAITING_ROUND_COUNT)
        round_prompt = self.channel.last
        self.assertEqual([[b.event for b in row] for row in round_prompt.buttons], [[SelectRoundCount(USER, 1)]])

        await self.controller.handle_event(SelectRoundCount(USER, 1))
        self.assertIsNone(round_prompt.buttons)
        self.assertEqual(session.pending, PendingSelection.AWAITING_BATCH_SIZE)

        await self.controller.handle_event(SelectBatchSize(USER, 1))
        await self.controller.drain()

        self.assertEqual(len(self.channel.media_groups), 1)
        self.assertEqual([item.sequence_index for item in self.channel.media_groups[0]], [1])
        self.assertEqual(session.current_choices, ["alice"])
        self.assertTrue(session.awaiting_answer)

        await self.answer(session)
        await self.controller.drain()

        self.assertIsNone(self.controller.get_session(USER))
        self.assertIn("🎉 Correct, the artist is @alice", self.channel.texts)
        self.assertIn("Played: 1. Correct: 1. Remaining: 0", self.channel.texts)
        self.assertIn("Your result: 1 of 1", self.channel.texts[-1])
        record = await self.stores[GameMode.ART].get_record("alice")
        self.assertEqual((record.total, record.correct), (1, 1))

    async def test_summary_offers_replay_and_menu(self):
        self.make_controller(arts=["alice#1.png"])
        session = await self.start_art_game(1, BATCH_ALL)
        await self.answer(session)

        summary = self.channel.last
        self.assertEqual(
            [[b.event for b in row] for row in summary.buttons],
            [[Start(USER, GameMode.ART), ShowMenu(USER)]]
        )
        self.assertIn("With all available artworks", summary.text)

    async def test_choice_buttons_use_labels(self):
        self.make_controller(arts=["alice#1.png", "bob#1.png", "carol#1.png"])
        self.controller.content_index.set_captions({"bob.png": "Bob the Builder"})
        session = await self.start_art_game(1, 1)

        labels = [row[0].label for row in self.channel.last.buttons]
        self.assertEqual(len(labels), 3)
        self.assertIn("Bob the Builder", labels)
        self.assertEqual(sum(1 for choice in session.current_choices if choice == session.current_entity), 1)

    async def test_batch_size_limits_media(self):
        self.make_controller(arts=["alice#1.png", "alice#2.png", "alice#3.png", "alice#4.png"])
        await self.start_art_game(1, 2)
        self.assertEqual([item.sequence_index for item in self.channel.media_groups[0]], [1, 2])

    async def test_pacing_delays(self):
        self.make_controller(arts=["alice#1.png", "bob#1.png"])
        session = await self.start_art_game(2, 1)
        self.assertEqual(self.sleep.delays, [0.5])

        await self.answer(session)
        await self.controller.drain()
        self.assertEqual(self.sleep.delays, [0.5, 0.9])

    async def test_mixed_group_falls_back(self):
        """A rejected mixed group is resent as single videos and a photo group."""
        self.make_controller(arts=["mia#1.png", "mia#2.mp4", "mia#3.jpg"], reject_mixed_groups=True)
        session = await self.start_art_game(1, BATCH_ALL)

        self.assertEqual(
            [[item.kind for item in group] for group in self.channel.media_groups],
            [[MediaKind.VIDEO], [MediaKind.IMAGE, MediaKind.IMAGE]]
        )
        self.assertTrue(session.awaiting_answer)

    async def test_entity_without_media(self):
        self.make_controller(arts=["alice#1.png"])
        with patch.object(self.controller.content_index, 'build_index', return_value={"ghost": []}):
            await self.start_art_game(1, 1)

        self.assertIsNone(self.controller.get_session(USER))
        self.assertEqual(self.channel.texts[-1], "❌ This author has no pictures.")
        self.assertEqual(self.channel.media_groups, [])


class TestAvatarFlow(QuizControllerTestCase):

    AVATARS = ["a.png", "b.png", "c.png", "d.png", "e.png"]

    async def start_avatar_game(self, rounds):
        await self.controller.handle_event(Start(USER, GameMode.AVATAR), self.channel)
        await self.controller.handle_event(SelectRoundCount(USER, rounds))
        return self.controller.get_session(USER)

    async def test_round_presented_immediately(self):
        self.make_controller(avatars=self.AVATARS)
        session = await self.start_avatar_game(2)

        photo = self.channel.last
        self.assertEqual(photo.kind, 'photo')
        self.assertTrue(photo.text.startswith("Round 1/2"))
        self.assertEqual([b.label for b in photo.buttons[0]], ["1", "2", "3", "4"])
        self.assertEqual(session.current_choices.count(session.current_entity), 1)
        self.assertEqual(session.pending, PendingSelection.NONE)

    async def test_two_rounds_correct_then_wrong(self):
        self.make_controller(avatars=self.AVATARS)
        session = await self.start_avatar_game(2)
        first_entity = session.current_entity

        await self.answer(session, correct=True)
        self.assertEqual((session.current_round, session.score), (1, 1))
        self.assertEqual(self.channel.texts[-1], "🎉 Correct!")

        await self.controller.drain()
        self.assertEqual(self.sleep.delays, [1.5])
        self.assertNotEqual(session.current_entity, first_entity)
        correct_position = session.current_choices.index(session.current_entity) + 1

        await self.answer(session, correct=False)
        await self.controller.drain()

        self.assertIn(f"❌ Wrong! The right answer was {correct_position}", self.channel.texts)
        self.assertIn("Your result: 1 of 2", self.channel.texts[-1])
        self.assertIsNone(self.controller.get_session(USER))
        self.assertEqual(sum(r.total for r in await self.stores[GameMode.AVATAR].all_records()), 2)

    async def test_rerender_keeps_choices(self):
        """Rendering the same round again shows identical options and image."""
        self.make_controller(avatars=self.AVATARS)
        session = await self.start_avatar_game(1)
        choices = list(session.current_choices)
        first = self.channel.last

        await self.controller.present_round(session)
        second = self.channel.last

        self.assertEqual(session.current_choices, choices)
        self.assertEqual(second.image_bytes, first.image_bytes)
        self.assertEqual([b.event for b in second.buttons[0]], [b.event for b in first.buttons[0]])

    async def test_cold_start_prefers_unseen(self):
        seeded = InMemoryStatsStore({
            entity_id: StatRecord(entity_id, entity_id, total=0 if entity_id == "c" else 9)
            for entity_id in "abcde"
        })
        self.make_controller(avatars=self.AVATARS, stores={GameMode.AVATAR: seeded})

        session = await self.start_avatar_game(1)

        self.assertEqual(session.current_entity, "c")

    async def test_duplicate_and_stale_answers_ignored(self):
        self.make_controller(avatars=self.AVATARS)
        session = await self.start_avatar_game(2)
        stale = SubmitAnswer(USER, session.round_token, session.current_choices.index(session.current_entity) + 1)

        await self.controller.handle_event(stale)
        await self.controller.handle_event(stale)
        self.assertEqual((session.current_round, session.score), (1, 1))

        await self.controller.drain()
        sent_before = len(self.channel.sent)
        await self.controller.handle_event(stale)

        self.assertEqual((session.current_round, session.score), (1, 1))
        self.assertTrue(session.awaiting_answer)
        self.assertEqual(len(self.channel.sent), sent_before)

    async def test_long_channel_names_fit_buttons(self):
        stems = [("Some Very Long YouTube Channel Name " * 3)[:90] + str(i) for i in range(4)]
        self.make_controller(avatars=[stem + ".png" for stem in stems])
        session = await self.start_avatar_game(2)

        view = build_view(self.channel.last.buttons)
        self.assertEqual(len(view.children), 4)
        self.assertTrue(all(len(item.custom_id) <= 100 for item in view.children))
        self.assertTrue(session.awaiting_answer)

        await self.answer(session)
        await self.controller.drain()
        self.assertEqual((session.current_round, session.score), (1, 1))
        self.assertTrue(self.channel.last.text.startswith("Round 2/2"))

    async def test_unknown_position_ignored(self):
        self.make_controller(avatars=self.AVATARS)
        session = await self.start_avatar_game(1)

        for position in (0, 5):
            await self.controller.handle_event(SubmitAnswer(USER, session.round_token, position))

        self.assertTrue(session.awaiting_answer)
        self.assertEqual(session.current_round, 0)

    async def test_simultaneous_presses_count_once(self):
        self.make_controller(avatars=self.AVATARS, channel=SuspendingChannel())
        session = await self.start_avatar_game(2)
        press = SubmitAnswer(USER, session.round_token, session.current_choices.index(session.current_entity) + 1)

        await asyncio.gather(*(self.controller.handle_event(press) for _ in range(3)))

        self.assertEqual((session.current_round, session.score), (1, 1))
        self.assertEqual(self.channel.texts.count("🎉 Correct!"), 1)

    async def test_other_users_presses_ignored(self):
        self.make_controller(avatars=self.AVATARS)
        session = await self.start_avatar_game(1)
        sent_before = len(self.channel.sent)

        await self.controller.handle_event(
            SubmitAnswer(OTHER_USER, session.round_token, 1)
        )

        self.assertTrue(session.awaiting_answer)
        self.assertEqual(len(self.channel.sent), sent_before)

    async def test_out_of_state_selections_ignored(self):
        self.make_controller(avatars=self.AVATARS)
        session = await self.start_avatar_game(2)

        await self.controller.handle_event(SelectBatchSize(USER, 2))
        await self.controller.handle_event(SelectRoundCount(USER, 5))

        self.assertIsNone(session.entities_per_round)
        self.assertEqual(session.total_rounds, 2)

    async def test_stats_failure_does_not_block(self):
        failing = FailingStatsStore()
        self.make_controller(avatars=self.AVATARS, stores={GameMode.AVATAR: failing})
        session = await self.start_avatar_game(2)

        await self.answer(session)
        await self.controller.drain()

        self.assertEqual(session.current_round, 1)
        self.assertTrue(session.awaiting_answer)
        self.assertTrue(self.channel.last.text.startswith("Round 2/2"))


class TestSessionLifecycle(QuizControllerTestCase):

    async def test_menu_offers_both_modes(self):
        self.make_controller()
        await self.controller.handle_event(ShowMenu(USER), self.channel)
        self.assertEqual(
            [b.event for b in self.channel.last.buttons[0]],
            [Start(USER, GameMode.AVATAR), Start(USER, GameMode.ART)]
        )

    async def test_no_content(self):
        self.make_controller()
        await self.controller.handle_event(Start(USER, GameMode.AVATAR), self.channel)

        self.assertIsNone(self.controller.get_session(USER))
        self.assertEqual(len(self.channel.sent), 1)
        self.assertIn("no suitable pictures", self.channel.texts[0])

    async def test_restart_replaces_session(self):
        self.make_controller(arts=["alice#1.png"], avatars=["a.png"])
        await self.controller.handle_event(Start(USER, GameMode.ART), self.channel)
        await self.controller.handle_event(Start(USER, GameMode.AVATAR), self.channel)
        self.assertEqual(self.controller.get_session(USER).mode, GameMode.AVATAR)

    async def test_unreachable_user_abandons_session(self):
        self.make_controller(arts=["alice#1.png"])
        await self.controller.handle_event(Start(USER, GameMode.ART), self.channel)
        self.channel.unreachable = True

        await self.controller.handle_event(SelectRoundCount(USER, 1))

        self.assertIsNone(self.controller.get_session(USER))

    async def test_unreachable_during_delayed_round(self):
        self.make_controller(arts=["alice#1.png"])
        await self.controller.handle_event(Start(USER, GameMode.ART), self.channel)
        await self.controller.handle_event(SelectRoundCount(USER, 1))
        await self.controller.handle_event(SelectBatchSize(USER, 1))
        self.channel.unreachable = True

        await self.controller.drain()

        self.assertIsNone(self.controller.get_session(USER))
        self.assertEqual(self.channel.media_groups, [])

    async def test_users_play_independently(self):
        self.make_controller(avatars=TestAvatarFlow.AVATARS)
        other_channel = FakeQuizChannel()

        await asyncio.gather(
            self.controller.handle_event(Start(USER, GameMode.AVATAR), self.channel),
            self.controller.handle_event(Start(OTHER_USER, GameMode.AVATAR), other_channel),
        )
        await self.controller.handle_event(SelectRoundCount(USER, 1))

        self.assertTrue(self.controller.get_session(USER).awaiting_answer)
        other = self.controller.get_session(OTHER_USER)
        self.assertEqual(other.pending, PendingSelection.AWAITING_ROUND_COUNT)
        self.assertEqual([m.kind for m in other_channel.sent], ['text'])

    async def test_user_events_handled_one_at_a_time(self):
        """A second selection arriving mid-handling waits and then finds the state moved on."""
        self.make_controller(arts=["alice#1.png", "bob#1.png"], channel=SuspendingChannel())
        await self.controller.handle_event(Start(USER, GameMode.ART), self.channel)

        await asyncio.gather(
            self.controller.handle_event(SelectRoundCount(USER, 1)),
            self.controller.handle_event(SelectRoundCount(USER, 2)),
        )

        session = self.controller.get_session(USER)
        self.assertEqual(session.total_rounds, 1)
        self.assertEqual(session.pending, PendingSelection.AWAITING_BATCH_SIZE)
        self.assertEqual(sum(1 for text in self.channel.texts if "How many artworks" in text), 1)

    async def test_undeliverable_round_ends_session(self):
        self.make_controller(avatars=TestAvatarFlow.AVATARS, channel=RateLimitedPhotoChannel())
        await self.controller.handle_event(Start(USER, GameMode.AVATAR), self.channel)

        with self.assertRaises(RateLimitedError):
            await self.controller.handle_event(SelectRoundCount(USER, 2))

        self.assertIsNone(self.controller.get_session(USER))
        self.assertEqual(self.controller.sessions.tracked_locks(), 0)

    async def test_finished_games_release_locks(self):
        self.make_controller(arts=["alice#1.png"])
        session = await self.start_art_game(1, 1)
        await self.answer(session)
        await self.controller.drain()

        self.assertIsNone(self.controller.get_session(USER))
        self.assertEqual(self.controller.sessions.tracked_locks(), 0)

    async def test_stats_summary(self):
        self.make_controller(avatars=TestAvatarFlow.AVATARS, arts=["alice#1.png"])
        await self.stores[GameMode.AVATAR].upsert_record(StatRecord("a", "a", total=10))

        summary = await self.controller.stats_summary()

        self.assertEqual(summary[GameMode.AVATAR]['total_rounds'], 10)
        self.assertEqual(summary[GameMode.AVATAR]['average_per_entity'], 2.0)
        self.assertEqual(summary[GameMode.ART]['total_rounds'], 0)


if __name__ == '__main__':
    unittest.main()
