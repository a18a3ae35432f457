import random
import unittest

from sync_fakes import FakeClock, FakeLink

from chatsync import events
from chatsync.bus import EventBus
from chatsync.events import MessageRecord
from chatsync.messages import DIVIDER, ChatListView, ChatSummary, MessageSynchronizer
from chatsync.store import InMemoryKeyValueStore, MessageCache, PinnedChatStore, ReadMessageCache


def _msg(message_id, sender, created_ms, *, kind="personal", chat_id=None, receiver=None, content="hi"):
    return MessageRecord(
        id=message_id,
        chat_kind=kind,
        chat_id=chat_id,
        sender_id=sender,
        created_ms=created_ms,
        content=content,
        receiver_id=receiver,
    )


class MessageSynchronizerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock(start_ms=1_000_000)
        self.link = FakeLink("me")
        self.bus = EventBus()
        self.store = InMemoryKeyValueStore()
        self.sync = self._synchronizer()
        self.group = self.sync.attach(self.bus)
        self.views = []
        self.bus.on(events.CHAT_LIST_UPDATED, self.views.append)

    async def asyncTearDown(self):
        self.group.close()

    def _synchronizer(self) -> MessageSynchronizer:
        return MessageSynchronizer(
            self.link,
            read_cache=ReadMessageCache(self.store),
            pinned_store=PinnedChatStore(self.store),
            message_cache=MessageCache(self.store, now_func=self.clock.now),
            now_func=self.clock.now,
        )

    def _assert_ordered(self, view: ChatListView) -> None:
        pinned_keys = [(-(s.pinned_at_ms or 0), s.chat_key) for s in view.pinned]
        other_keys = [(-s.last_message_ms, s.chat_key) for s in view.others]
        self.assertTrue(all(s.pinned for s in view.pinned))
        self.assertFalse(any(s.pinned for s in view.others))
        self.assertEqual(pinned_keys, sorted(pinned_keys))
        self.assertEqual(other_keys, sorted(other_keys))

    async def test_incoming_message_raises_unread_and_moves_chat_to_top(self):
        self.sync.load_chats(
            [
                ChatSummary.for_key("personal-42", last_message_ms=100),
                ChatSummary.for_key("group-7", last_message_ms=500),
            ]
        )
        self.assertEqual(self.sync.chat_list().keys(), ["group-7", "personal-42"])

        self.sync.apply_incoming(_msg("m1", "42", 1000, receiver="me"))

        summary = self.sync.summary("personal-42")
        self.assertEqual(summary.unread_count, 1)
        self.assertFalse(summary.pinned)
        self.assertEqual(self.sync.chat_list().others[0].chat_key, "personal-42")

    async def test_pinned_chats_sorted_by_pin_time_before_divider(self):
        self.sync.load_chats(
            [
                ChatSummary.for_key("group-7", last_message_ms=10),
                ChatSummary.for_key("personal-42", last_message_ms=20),
                ChatSummary.for_key("personal-50", last_message_ms=30),
            ]
        )

        self.sync.pin_chat("group-7", 100)
        self.sync.pin_chat("personal-42", 200)

        self.assertEqual(
            self.sync.chat_list().keys(),
            ["personal-42", "group-7", DIVIDER, "personal-50"],
        )
        self.assertEqual(PinnedChatStore(self.store).load(), {"group-7": 100, "personal-42": 200})

        self.sync.unpin_chat("personal-42")
        self.assertEqual(self.sync.chat_list().keys(), ["group-7", DIVIDER, "personal-50", "personal-42"])
        self.assertEqual(PinnedChatStore(self.store).load(), {"group-7": 100})

    async def test_divider_only_between_non_empty_groups(self):
        self.sync.load_chats([ChatSummary.for_key("group-7", last_message_ms=10)])
        self.assertEqual(self.sync.chat_list().rows()[0].chat_key, "group-7")
        self.assertNotIn(DIVIDER, self.sync.chat_list().rows())

        self.sync.pin_chat("group-7", 5)
        self.assertEqual(self.sync.chat_list().keys(), ["group-7"])

    async def test_ties_break_by_chat_key(self):
        self.sync.load_chats(
            [
                ChatSummary.for_key("personal-9", last_message_ms=10),
                ChatSummary.for_key("group-3", last_message_ms=10),
            ]
        )
        self.assertEqual(self.sync.chat_list().keys(), ["group-3", "personal-9"])

    async def test_own_message_read_flag_is_monotonic(self):
        ack = events.normalize(
            events.MESSAGE_SEND_ACK,
            {
                "id": 555,
                "sender_id": "me",
                "receiver_id": 42,
                "created_at": 1_700_000_000_000,
                "content": "hello",
                "is_read": 1,
            },
        )
        self.bus.emit(events.MESSAGE_SEND_ACK, ack)

        summary = self.sync.summary("personal-42")
        self.assertEqual(summary.last_message_id, "555")
        self.assertFalse(summary.last_message_read)
        self.assertEqual(summary.unread_count, 0)

        self.bus.emit(
            events.READ_RECEIPT_UPDATED,
            events.normalize(events.READ_RECEIPT_UPDATED, {"messageId": 555, "isRead": True}),
        )
        self.assertTrue(self.sync.summary("personal-42").last_message_read)

        self.bus.emit(
            events.READ_RECEIPT_UPDATED,
            events.normalize(events.READ_RECEIPT_UPDATED, {"messageId": 555, "isRead": "0"}),
        )
        self.assertTrue(self.sync.summary("personal-42").last_message_read)
        self.assertTrue(self.sync.timeline("personal-42")[0].is_read)
        self.assertEqual(ReadMessageCache(self.store).load("personal-42"), {"555"})

    async def test_group_reader_set_only_grows(self):
        self.sync.apply_sent_echo(_msg("g1", "me", 100, kind="group", chat_id="7"))

        self.assertTrue(self.sync.apply_read_receipt("g1", reader_ids=["a"]))
        self.assertTrue(self.sync.apply_read_receipt("g1", reader_ids=["b"]))
        self.assertFalse(self.sync.apply_read_receipt("g1", reader_ids=["a"]))
        self.assertFalse(self.sync.apply_read_receipt("g1", is_read=False))

        summary = self.sync.summary("group-7")
        self.assertTrue(summary.last_message_read)
        self.assertEqual(summary.last_message_reader_count, 2)
        self.assertEqual(self.sync.receipt("g1").reader_ids, {"a", "b"})

    async def test_receipt_before_message_is_applied_on_arrival(self):
        self.assertTrue(self.sync.apply_read_receipt("x9", is_read=True))

        self.sync.apply_sent_echo(_msg("x9", "me", 100, receiver="42"))

        self.assertTrue(self.sync.timeline("personal-42")[0].is_read)
        self.assertTrue(self.sync.summary("personal-42").last_message_read)

    async def test_duplicate_ids_never_repeat_in_timeline(self):
        rng = random.Random(7)
        ids = [f"m{rng.randrange(20)}" for _ in range(200)]
        for index, message_id in enumerate(ids):
            self.sync.apply_incoming(_msg(message_id, "42", 1000 + index))

        timeline_ids = [m.id for m in self.sync.timeline("personal-42")]
        self.assertEqual(len(timeline_ids), len(set(timeline_ids)))
        self.assertEqual(set(timeline_ids), set(ids))
        self.assertEqual(self.sync.summary("personal-42").unread_count, len(set(ids)))

    async def test_chat_list_stays_ordered_after_every_mutation(self):
        rng = random.Random(11)
        chats = ["personal-1", "personal-2", "group-3", "group-4"]
        for step in range(60):
            key = rng.choice(chats)
            kind, chat_id = events.split_chat_key(key)
            action = rng.randrange(4)
            if action == 0:
                self.sync.pin_chat(key, rng.randrange(1000))
            elif action == 1:
                self.sync.unpin_chat(key)
            else:
                self.sync.apply_incoming(
                    _msg(f"s{step}", "u", rng.randrange(10_000), kind=kind, chat_id=chat_id)
                )

        self.assertTrue(self.views)
        for view in self.views:
            self._assert_ordered(view)

    async def test_older_message_does_not_regress_summary(self):
        self.sync.apply_incoming(_msg("new", "42", 2000))
        self.sync.apply_incoming(_msg("old", "42", 1000))

        summary = self.sync.summary("personal-42")
        self.assertEqual(summary.last_message_id, "new")
        self.assertEqual(summary.last_message_ms, 2000)
        self.assertEqual([m.id for m in self.sync.timeline("personal-42")], ["old", "new"])

    async def test_mark_visible_sends_mark_read_once(self):
        self.sync.apply_incoming(_msg("m1", "42", 1000))
        self.sync.apply_incoming(_msg("m2", "42", 1001))
        self.sync.apply_sent_echo(_msg("m3", "me", 1002, receiver="42"))

        marked = await self.sync.mark_visible("personal-42", ["m1", "m2", "m1", "m3", "missing"])

        self.assertEqual(marked, ["m1", "m2"])
        self.assertEqual(
            self.link.sent,
            [
                ("mark_read", {"message_id": "m1", "chat_kind": "personal", "chat_id": "42"}),
                ("mark_read", {"message_id": "m2", "chat_kind": "personal", "chat_id": "42"}),
            ],
        )
        self.assertEqual(self.sync.summary("personal-42").unread_count, 0)
        self.assertEqual(ReadMessageCache(self.store).load("personal-42"), {"m1", "m2"})

        self.assertEqual(await self.sync.mark_visible("personal-42", ["m1", "m2"]), [])
        self.assertEqual(len(self.link.sent), 2)

    async def test_removed_chat_accepts_its_messages_again(self):
        self.sync.apply_incoming(_msg("m1", "42", 1000))
        self.sync.remove_chat("personal-42")

        self.sync.apply_incoming(_msg("m1", "42", 1000))

        self.assertEqual([m.id for m in self.sync.timeline("personal-42")], ["m1"])
        self.assertEqual(await self.sync.mark_visible("personal-42", ["m1"]), ["m1"])
        self.assertEqual(self.sync.summary("personal-42").unread_count, 0)

    async def test_unread_never_goes_negative(self):
        self.sync.apply_incoming(_msg("m1", "42", 1000))
        self.bus.emit(
            events.UNREAD_COUNT_RESET,
            events.normalize(events.UNREAD_COUNT_RESET, {"chat_kind": "personal", "chat_id": "42", "count": 0}),
        )
        self.assertEqual(self.sync.summary("personal-42").unread_count, 0)

        await self.sync.mark_visible("personal-42", ["m1"])

        self.assertEqual(self.sync.summary("personal-42").unread_count, 0)

    async def test_chat_removed_drops_summary_and_cache(self):
        self.sync.apply_incoming(_msg("m1", "42", 1000))
        self.assertIsNotNone(MessageCache(self.store, now_func=self.clock.now).load("personal-42"))

        self.bus.emit(
            events.CHAT_REMOVED,
            events.normalize(events.CHAT_REMOVED, {"chat_kind": "personal", "chat_id": 42}),
        )

        self.assertIsNone(self.sync.summary("personal-42"))
        self.assertEqual(self.sync.timeline("personal-42"), [])
        self.assertNotIn("personal-42", self.sync.chat_list().keys())
        self.assertIsNone(MessageCache(self.store, now_func=self.clock.now).load("personal-42"))

    async def test_open_chat_rebuilds_read_flags_from_cache(self):
        ReadMessageCache(self.store).add("personal-42", ["m1"])
        own = _msg("m3", "me", 1002, receiver="42")
        own.is_read = True

        timeline = self.sync.open_chat(
            "personal-42",
            [_msg("m2", "42", 1001), _msg("m1", "42", 1000), own],
        )

        self.assertEqual([(m.id, m.is_read) for m in timeline], [("m1", True), ("m2", False), ("m3", True)])
        self.assertTrue(self.sync.receipt("m3").read)

        fresh = self._synchronizer()
        cached = fresh.open_chat("personal-42")
        self.assertEqual([m.id for m in cached], ["m1", "m2", "m3"])

    async def test_load_chats_restores_pins_and_keeps_newer_live_state(self):
        PinnedChatStore(self.store).pin("group-7", 300)
        sync = self._synchronizer()
        sync.apply_incoming(_msg("m1", "42", 5000))

        sync.load_chats(
            [
                ChatSummary.for_key("group-7", last_message_ms=10, title="Climbing"),
                ChatSummary.for_key("personal-42", last_message_ms=100),
            ]
        )

        self.assertTrue(sync.summary("group-7").pinned)
        self.assertEqual(sync.summary("group-7").pinned_at_ms, 300)
        self.assertEqual(sync.summary("personal-42").last_message_ms, 5000)
        self.assertEqual(sync.chat_list().keys(), ["group-7", DIVIDER, "personal-42"])

    async def test_send_message_addresses_group_and_personal_chats(self):
        group_client_id = await self.sync.send_message("group-7", "hello", reply_to_id="m1")
        await self.sync.send_message("personal-42", "hey")

        name, body = self.link.sent[0]
        self.assertEqual(name, "message_send")
        self.assertEqual(
            body,
            {
                "chat_kind": "group",
                "chat_id": "7",
                "content": "hello",
                "client_id": group_client_id,
                "reply_to_id": "m1",
            },
        )
        self.assertEqual(self.link.sent[1][1]["to_user_id"], "42")
        self.assertNotIn("chat_id", self.link.sent[1][1])

    async def test_unresolvable_group_message_is_dropped(self):
        with self.assertLogs("chatsync.messages", level="WARNING"):
            applied = self.sync.apply_incoming(_msg("m1", "42", 1000, kind="group"))
        self.assertFalse(applied)

    async def test_identity_change_resets_chat_list(self):
        self.sync.apply_incoming(_msg("m1", "42", 1000))

        self.bus.emit(events.IDENTITY_CHANGED, "someone-else")

        self.assertEqual(self.sync.chat_list().keys(), [])
        self.assertIsNone(self.sync.summary("personal-42"))


if __name__ == "__main__":
    unittest.main()
