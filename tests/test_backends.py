import threading
from datetime import timedelta
from unittest import TestCase, mock

import fakeredis

from backend import ALREADY_EXISTS, build_backend, decode_room
from errors import StoreUnavailable
from memory_backend import MemoryBackend
from models import Player, Role, Room, RoomStatus, utcnow
from redis_keys import REDIS_INDEX_KEY, REDIS_META_KEY, REDIS_PLAYERS_KEY

from .utils import FakeClock, make_redis_backend


def make_room(code: str, **fields) -> Room:
    now = utcnow()
    admin = Player(name="admin", is_admin=True, online=True)
    return Room(code=code, status=RoomStatus.LOBBY, created_at=now, last_activity_at=now, players=[admin], **fields)


class RoomBackendContract:
    """Behaviour both room backends must share. Subclasses provide the backend."""

    def make_backend(self):
        raise NotImplementedError

    def expire(self, backend, code: str):
        """Make the room's records disappear the way TTL expiry would."""
        raise NotImplementedError

    def setUp(self):
        self.backend = self.make_backend()

    def test_get_after_create_returns_only_admin(self):
        room = make_room("ABCD")
        self.assertEqual(self.backend.create_room_if_absent("ABCD", room), {"created": True})

        stored = self.backend.get_room("ABCD")
        self.assertEqual(stored.code, "ABCD")
        self.assertEqual(stored.status, RoomStatus.LOBBY)
        self.assertEqual(len(stored.players), 1)
        self.assertTrue(stored.players[0].is_admin)
        self.assertEqual(stored.players[0].player_id, room.players[0].player_id)
        self.assertEqual(int(stored.created_at.timestamp()), int(room.created_at.timestamp()))

    def test_second_create_reports_already_exists(self):
        self.backend.create_room_if_absent("ABCD", make_room("ABCD"))
        second = make_room("ABCD")

        self.assertEqual(
            self.backend.create_room_if_absent("ABCD", second),
            {"created": False, "reason": ALREADY_EXISTS},
        )
        stored = self.backend.get_room("ABCD")
        self.assertNotIn(second.players[0].player_id, [p.player_id for p in stored.players])

    def test_exists(self):
        self.assertFalse(self.backend.room_exists("ABCD"))
        self.backend.create_room_if_absent("ABCD", make_room("ABCD"))
        self.assertTrue(self.backend.room_exists("ABCD"))

    def test_get_missing_room(self):
        self.assertIsNone(self.backend.get_room("NOPE"))

    def test_players_without_metadata_are_not_a_room(self):
        self.backend.add_player("GHST", Player(name="ghost"))
        self.assertIsNone(self.backend.get_room("GHST"))

    def test_meta_write_after_expiry_does_not_revive_room(self):
        self.backend.create_room_if_absent("ABCD", make_room("ABCD"))
        self.expire(self.backend, "ABCD")
        self.backend.set_room_meta("ABCD", {"last_activity_at": utcnow()})

        self.assertFalse(self.backend.room_exists("ABCD"))
        self.assertIsNone(self.backend.get_room("ABCD"))

    def test_set_meta_merges_fields(self):
        self.backend.create_room_if_absent("ABCD", make_room("ABCD"))
        later = utcnow() + timedelta(minutes=5)
        self.backend.set_room_meta("ABCD", {"status": RoomStatus.IN_GAME, "last_activity_at": later})

        stored = self.backend.get_room("ABCD")
        self.assertEqual(stored.status, RoomStatus.IN_GAME)
        self.assertEqual(int(stored.last_activity_at.timestamp()), int(later.timestamp()))
        self.assertIsNotNone(stored.created_at)

    def test_add_update_remove_player(self):
        self.backend.create_room_if_absent("ABCD", make_room("ABCD"))
        guest = Player(name="guest")
        self.backend.add_player("ABCD", guest)

        updated = self.backend.update_player("ABCD", guest.player_id, {"socket_id": "s1", "online": True})
        self.assertEqual(updated.socket_id, "s1")
        self.assertTrue(updated.online)
        self.assertEqual(updated.name, "guest")
        self.assertEqual(self.backend.get_room("ABCD").get_player(guest.player_id).socket_id, "s1")

        self.backend.remove_player("ABCD", guest.player_id)
        self.assertIsNone(self.backend.get_room("ABCD").get_player(guest.player_id))

    def test_update_missing_player_has_no_side_effects(self):
        self.backend.create_room_if_absent("ABCD", make_room("ABCD"))
        self.assertIsNone(self.backend.update_player("ABCD", "missing", {"online": False}))
        self.assertEqual(len(self.backend.get_room("ABCD").players), 1)

    def test_remove_missing_player_is_noop(self):
        self.backend.create_room_if_absent("ABCD", make_room("ABCD"))
        self.backend.remove_player("ABCD", "missing")
        self.assertEqual(len(self.backend.get_room("ABCD").players), 1)

    def test_update_player_is_last_writer_wins(self):
        # Read-modify-write sequences are not serialized: a stale copy written
        # back after a concurrent update silently undoes that update.
        self.backend.create_room_if_absent("ABCD", make_room("ABCD"))
        guest = Player(name="guest", online=True)
        self.backend.add_player("ABCD", guest)

        stale = self.backend.get_room("ABCD").get_player(guest.player_id)
        self.backend.update_player("ABCD", guest.player_id, {"online": False})
        self.backend.add_player("ABCD", stale)

        self.assertTrue(self.backend.get_room("ABCD").get_player(guest.player_id).online)

    def test_commit_round_writes_meta_and_players(self):
        room = make_room("ABCD")
        self.backend.create_room_if_absent("ABCD", room)
        admin = room.players[0]
        admin.role = Role.ASSASSINO
        self.backend.commit_round("ABCD", {"status": RoomStatus.IN_GAME}, [admin])

        stored = self.backend.get_room("ABCD")
        self.assertEqual(stored.status, RoomStatus.IN_GAME)
        self.assertEqual(stored.players[0].role.value, "assassino")

    def test_list_rooms(self):
        self.backend.create_room_if_absent("AAAA", make_room("AAAA"))
        self.backend.create_room_if_absent("BBBB", make_room("BBBB"))
        self.backend.add_player("BBBB", Player(name="guest"))

        summaries = {s.code: s for s in self.backend.list_rooms()}
        self.assertEqual(set(summaries), {"AAAA", "BBBB"})
        self.assertEqual(summaries["AAAA"].player_count, 1)
        self.assertEqual(summaries["BBBB"].player_count, 2)

    def test_list_rooms_reaps_expired_codes(self):
        self.backend.create_room_if_absent("AAAA", make_room("AAAA"))
        self.backend.create_room_if_absent("BBBB", make_room("BBBB"))
        self.expire(self.backend, "AAAA")

        self.assertEqual([s.code for s in self.backend.list_rooms()], ["BBBB"])
        self.assertEqual(self.indexed_codes(), {"BBBB"})

    def test_code_is_reusable_after_expiry(self):
        self.backend.create_room_if_absent("AAAA", make_room("AAAA"))
        self.expire(self.backend, "AAAA")
        self.assertFalse(self.backend.room_exists("AAAA"))
        self.assertEqual(self.backend.create_room_if_absent("AAAA", make_room("AAAA")), {"created": True})

    def test_concurrent_create_has_one_winner(self):
        backends = [self.make_backend_sharing(self.backend) for _ in range(8)]
        barrier = threading.Barrier(len(backends))
        results = []

        def create(backend):
            barrier.wait()
            results.append(backend.create_room_if_absent("RACE", make_room("RACE")))

        threads = [threading.Thread(target=create, args=(b,)) for b in backends]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(sum(1 for r in results if r["created"]), 1)
        self.assertEqual(len(self.backend.get_room("RACE").players), 1)

    def test_publish_reaches_subscriber(self):
        pubsub = self.backend.subscribe_to_room("ABCD")
        self.backend.publish_message("ABCD", {"type": "room-updated", "room": {"code": "ABCD"}})

        message = None
        for _ in range(20):
            message = pubsub.get_message(timeout=0.1, ignore_subscribe_messages=True)
            if message is not None:
                break
        pubsub.close()
        self.assertIsNotNone(message)
        self.assertIn('"room-updated"', message["data"])


class MemoryBackendTests(RoomBackendContract, TestCase):
    def make_backend(self):
        self.clock = FakeClock()
        return MemoryBackend(ttl=60, clock=self.clock)

    def make_backend_sharing(self, backend):
        # a single process shares one instance between its tasks
        return backend

    def expire(self, backend, code):
        self.clock.advance(backend.ttl + 1)

    def indexed_codes(self):
        return self.backend.indexed_codes()

    def test_activity_slides_the_expiry_window(self):
        self.backend.create_room_if_absent("AAAA", make_room("AAAA"))
        self.clock.advance(50)
        self.backend.add_player("AAAA", Player(name="guest"))
        self.clock.advance(50)

        room = self.backend.get_room("AAAA")
        self.assertIsNotNone(room)
        self.assertEqual(len(room.players), 2)

        self.clock.advance(11)
        self.assertIsNone(self.backend.get_room("AAAA"))

    def test_index_is_reaped_only_when_listing(self):
        self.backend.create_room_if_absent("AAAA", make_room("AAAA"))
        self.clock.advance(61)
        self.assertEqual(self.backend.indexed_codes(), {"AAAA"})
        self.backend.list_rooms()
        self.assertEqual(self.backend.indexed_codes(), set())


class RedisBackendTests(RoomBackendContract, TestCase):
    def make_backend(self):
        self.server = fakeredis.FakeServer()
        return make_redis_backend(self.server, ttl=60)

    def make_backend_sharing(self, backend):
        # another server process talking to the same Redis
        return make_redis_backend(self.server, ttl=60)

    def expire(self, backend, code):
        backend.redis_client.delete(REDIS_META_KEY.format(code=code), REDIS_PLAYERS_KEY.format(code=code))

    def indexed_codes(self):
        return self.backend.redis_client.smembers(REDIS_INDEX_KEY)

    def test_create_sets_ttl_on_both_records(self):
        self.backend.create_room_if_absent("AAAA", make_room("AAAA"))
        client = self.backend.redis_client

        self.assertTrue(0 < client.ttl(REDIS_META_KEY.format(code="AAAA")) <= 60)
        self.assertTrue(0 < client.ttl(REDIS_PLAYERS_KEY.format(code="AAAA")) <= 60)

    def test_mutations_refresh_ttl(self):
        room = make_room("AAAA")
        admin_id = room.players[0].player_id
        self.backend.create_room_if_absent("AAAA", room)
        client = self.backend.redis_client
        guest = Player(name="guest")

        mutations = {
            "add_player": lambda: self.backend.add_player("AAAA", guest),
            "set_room_meta": lambda: self.backend.set_room_meta("AAAA", {"last_activity_at": utcnow()}),
            "update_player": lambda: self.backend.update_player("AAAA", admin_id, {"online": False}),
            "commit_round": lambda: self.backend.commit_round(
                "AAAA", {"status": RoomStatus.IN_GAME}, self.backend.get_room("AAAA").players
            ),
            "remove_player": lambda: self.backend.remove_player("AAAA", guest.player_id),
        }
        for name, mutate in mutations.items():
            with self.subTest(mutation=name):
                client.expire(REDIS_META_KEY.format(code="AAAA"), 5)
                client.expire(REDIS_PLAYERS_KEY.format(code="AAAA"), 5)

                mutate()

                self.assertGreater(client.ttl(REDIS_META_KEY.format(code="AAAA")), 5)
                self.assertGreater(client.ttl(REDIS_PLAYERS_KEY.format(code="AAAA")), 5)

    def test_reaping_keeps_a_code_recreated_meanwhile(self):
        self.backend.create_room_if_absent("AAAA", make_room("AAAA"))
        self.expire(self.backend, "AAAA")

        def recreate_after_read(code, meta, players_hash):
            room = decode_room(code, meta, players_hash)
            if room is None:
                # another process reuses the code between the read and the reap
                self.make_backend_sharing(self.backend).create_room_if_absent(code, make_room(code))
            return room

        with mock.patch("backend.decode_room", side_effect=recreate_after_read):
            self.assertEqual(self.backend.list_rooms(), [])

        self.assertEqual(self.indexed_codes(), {"AAAA"})
        self.assertEqual([s.code for s in self.backend.list_rooms()], ["AAAA"])

    def test_metadata_layout(self):
        room = make_room("AAAA")
        self.backend.create_room_if_absent("AAAA", room)
        meta = self.backend.redis_client.hgetall(REDIS_META_KEY.format(code="AAAA"))

        self.assertEqual(meta["code"], "AAAA")
        self.assertEqual(meta["status"], "lobby")
        self.assertIn("createdAt", meta)
        self.assertIn("lastActivityAt", meta)

    def test_unreadable_player_records_are_skipped(self):
        self.backend.create_room_if_absent("AAAA", make_room("AAAA"))
        self.backend.redis_client.hset(REDIS_PLAYERS_KEY.format(code="AAAA"), "broken", "{not json")

        self.assertEqual(len(self.backend.get_room("AAAA").players), 1)

    def test_transport_failure_is_store_unavailable(self):
        self.server.connected = False
        with self.assertRaises(StoreUnavailable):
            self.backend.get_room("AAAA")
        with self.assertRaises(StoreUnavailable):
            self.backend.create_room_if_absent("AAAA", make_room("AAAA"))


class BuildBackendTests(TestCase):
    def test_memory(self):
        self.assertIsInstance(build_backend("memory"), MemoryBackend)

    def test_unknown(self):
        with self.assertRaises(ValueError):
            build_backend("sqlite")
