import unittest
from unittest import mock

from roomchat.core.errors import InvalidInputError, InvalidRoomCodeError, WriteFailedError
from roomchat.services.document_store import InMemoryDocumentStore, StoreError
from roomchat.services.room_manager import ROOMS_COLLECTION, RoomManager, messages_collection

from conftest import ALICE, BOB


class RoomManagerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = InMemoryDocumentStore()
        self.rooms = RoomManager(self.store)

    async def test_create_then_join(self):
        room_id = await self.rooms.create_room("Friday Hangout", ALICE)

        room = await self.rooms.get_room(room_id)
        self.assertEqual(room.name, "Friday Hangout")
        self.assertEqual(room.owner_id, ALICE.uid)
        self.assertEqual(room.joiners, {ALICE.uid})
        self.assertIsNotNone(room.created_at)

        joined = await self.rooms.join_room(f"  {room_id} ", BOB)

        room = await self.rooms.get_room(room_id)
        self.assertEqual(joined, room_id)
        self.assertEqual(room.joiners, {ALICE.uid, BOB.uid})
        self.assertEqual(room.joiner_count, 2)

    async def test_join_is_idempotent(self):
        room_id = await self.rooms.create_room("Friday Hangout", ALICE)

        await self.rooms.join_room(room_id, BOB)
        await self.rooms.join_room(room_id, BOB)
        await self.rooms.join_room(room_id, ALICE)

        room = await self.rooms.get_room(room_id)
        self.assertEqual(room.joiner_count, 2)

    async def test_join_unknown_code_writes_nothing(self):
        with mock.patch.object(self.store, "add_to_set", wraps=self.store.add_to_set) as add_to_set:
            with self.assertRaises(InvalidRoomCodeError) as ctx:
                await self.rooms.join_room("ZZZZZZ", BOB)

        add_to_set.assert_not_called()
        self.assertEqual(ctx.exception.user_message, "Invalid Room Code. Please check and try again.")

    async def test_join_blank_code_is_invalid(self):
        with self.assertRaises(InvalidRoomCodeError):
            await self.rooms.join_room("   ", BOB)

    async def test_create_requires_a_name(self):
        with self.assertRaises(InvalidInputError):
            await self.rooms.create_room("  ", ALICE)

    async def test_create_write_failure_is_reported(self):
        with mock.patch.object(self.store, "add", side_effect=StoreError("offline")):
            with self.assertRaises(WriteFailedError) as ctx:
                await self.rooms.create_room("Friday Hangout", ALICE)
        self.assertEqual(ctx.exception.user_message, "Failed to create room.")

    async def test_join_write_failure_is_reported(self):
        room_id = await self.rooms.create_room("Friday Hangout", ALICE)
        with mock.patch.object(self.store, "add_to_set", side_effect=StoreError("offline")):
            with self.assertRaises(WriteFailedError):
                await self.rooms.join_room(room_id, BOB)

    async def test_delete_removes_room_and_messages(self):
        room_id = await self.rooms.create_room("Friday Hangout", ALICE)
        await self.store.add(messages_collection(room_id), {"text": "hi", "senderId": ALICE.uid})

        await self.rooms.delete_room(room_id)

        self.assertIsNone(await self.rooms.get_room(room_id))
        self.assertEqual(await self.store.delete_collection(messages_collection(room_id)), 0)

    async def test_failed_message_cleanup_keeps_room(self):
        room_id = await self.rooms.create_room("Friday Hangout", ALICE)

        with mock.patch.object(self.store, "delete_collection", side_effect=StoreError("offline")):
            with self.assertRaises(WriteFailedError):
                await self.rooms.delete_room(room_id)

        snap = await self.store.get(ROOMS_COLLECTION, room_id)
        self.assertTrue(snap.exists)
