import asyncio
import unittest

from fakes import FakeApi, FakeTransport, fast_config, make_game
from client.errors import ClientError
from client.schemas import GameState
from client.services.controller import GameController
from client.services.credentials import MappingCredentials
from client.services.polling import PollingScheduler
from client.services.watchdog import MoveWatchdog


class TestPollingScheduler(unittest.IsolatedAsyncioTestCase):
    async def test_fast_phase_then_slow(self):
        calls = []

        async def tick():
            calls.append(1)

        poller = PollingScheduler(tick, fast_interval=0.01, fast_ticks=3, slow_interval=0.5)
        poller.start()
        await asyncio.sleep(0.15)
        self.assertEqual(len(calls), 3)
        self.assertEqual(poller.interval, 0.5)
        self.assertEqual(poller.fast_remaining, 0)
        poller.stop()
        self.assertFalse(poller.running)

    async def test_restart_resets_phase(self):
        async def tick():
            pass

        poller = PollingScheduler(tick, fast_interval=0.01, fast_ticks=2, slow_interval=0.5)
        poller.start()
        await asyncio.sleep(0.1)
        self.assertEqual(poller.interval, 0.5)
        poller.start()
        self.assertEqual((poller.interval, poller.fast_remaining, poller.ticks), (0.01, 2, 0))
        poller.stop()

    async def test_tick_errors_keep_loop_alive(self):
        calls = []

        async def tick():
            calls.append(1)
            raise ClientError("server down")

        poller = PollingScheduler(tick, fast_interval=0.01, fast_ticks=10, slow_interval=0.01)
        poller.start()
        await asyncio.sleep(0.1)
        self.assertGreater(len(calls), 1)
        self.assertTrue(poller.running)
        poller.stop()

    async def test_stop_from_inside_tick(self):
        calls = []
        poller = None

        async def tick():
            calls.append(1)
            poller.stop()

        poller = PollingScheduler(tick, fast_interval=0.01, fast_ticks=5, slow_interval=0.01)
        poller.start()
        await asyncio.sleep(0.1)
        self.assertEqual(len(calls), 1)
        self.assertFalse(poller.running)


class TestMoveWatchdog(unittest.IsolatedAsyncioTestCase):
    async def test_expiry_fires_once(self):
        fired = []

        async def on_expire():
            fired.append(1)

        dog = MoveWatchdog(0.02, on_expire)
        dog.start()
        self.assertTrue(dog.active)
        await asyncio.sleep(0.1)
        self.assertEqual(fired, [1])
        self.assertFalse(dog.active)

    async def test_cancel_is_idempotent(self):
        fired = []

        async def on_expire():
            fired.append(1)

        dog = MoveWatchdog(0.02, on_expire)
        dog.cancel()
        dog.start()
        dog.cancel()
        dog.cancel()
        await asyncio.sleep(0.06)
        self.assertEqual(fired, [])

    async def test_restart_replaces_timer(self):
        fired = []

        async def on_expire():
            fired.append(1)

        dog = MoveWatchdog(0.05, on_expire)
        dog.start()
        await asyncio.sleep(0.03)
        dog.start()
        await asyncio.sleep(0.03)
        self.assertEqual(fired, [])
        await asyncio.sleep(0.06)
        self.assertEqual(fired, [1])


class TestPollTick(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.api = FakeApi(make_game((3, 4, 5, 6)))
        self.transport = FakeTransport(fail_connect=True)
        self.ctl = GameController(self.api, self.transport, MappingCredentials({"userId": "1"}),
                                  fast_config(poll_fast_interval=5.0))
        await self.ctl.load_game("7")
        self.ctl.stop_polling()

    async def asyncTearDown(self):
        await self.ctl.close()

    async def test_failed_hub_starts_polling(self):
        await self.ctl.reconnect()
        self.assertFalse(self.ctl.push_available)
        self.assertTrue(self.ctl.polling.running)

    async def test_empty_snapshot_keeps_players_without_notifying(self):
        notified = []
        self.ctl.add_listener(lambda: notified.append(1))
        self.api.set_state(GameState(id="7"))
        await self.ctl._poll_tick()
        self.assertEqual(len(self.ctl.game.players), 4)
        self.assertEqual(notified, [])

    async def test_tick_skipped_during_grace(self):
        self.api.roll_results = [ClientError("offline"), ClientError("offline")]
        self.assertTrue(await self.ctl.roll())
        self.assertTrue(self.ctl.simulator.grace_active())
        calls = self.api.get_calls
        await self.ctl._poll_tick()
        self.assertEqual(self.api.get_calls, calls)


if __name__ == '__main__':
    unittest.main()
