import unittest

from fakes import FakeApi, FakeClock, FixedDice, make_game
from client.errors import PullChannelError
from client.schemas import GameStatus, MoveResult
from client.services.attribution import attribute_mover
from client.services.simulator import OptimisticMoveSimulator, pass_turn


def test_attribution_prefers_arithmetic_match_over_turn_flag():
    game = make_game((8, 10), turn=0)
    assert attribute_mover(game.players, 4, 14) == "2"


def test_attribution_falls_back_to_turn_holder():
    game = make_game((8, 10), turn=1)
    assert attribute_mover(game.players, 3, 40) == "2"


def test_attribution_without_match_or_turn():
    game = make_game((8, 10), turn=-1)
    assert attribute_mover(game.players, 3, 40) is None


def test_pass_turn_wraps_to_first_seat():
    game = make_game((1, 2, 3), turn=2)
    out = pass_turn(game.players, 2, 9)
    assert [(p.position, p.is_turn) for p in out] == [(1, True), (2, False), (9, False)]


def test_pass_turn_single_player_keeps_turn():
    game = make_game((5,), turn=0)
    out = pass_turn(game.players, 0, 11)
    assert (out[0].position, out[0].is_turn) == (11, True)


class TestOptimisticMoveSimulator(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.api = FakeApi()
        self.clock = FakeClock(50.0)
        self.persisted = []

    def _simulator(self, dice):
        return OptimisticMoveSimulator(self.api, grace=4.0, persist_timeout=0.05,
                                       clock=self.clock, rng=FixedDice(dice))

    async def _on_persisted(self, result):
        self.persisted.append(result)

    async def test_server_position_wins_when_roll_persists(self):
        self.api.roll_results = [MoveResult(dice=3, from_position=4, to_position=7)]
        sim = self._simulator(6)
        move = await sim.simulate(make_game((4, 0)), self._on_persisted)
        self.assertTrue(move.persisted)
        self.assertEqual(move.mover_id, "1")
        self.assertEqual(move.state.players[0].position, 7)
        self.assertEqual([p.is_turn for p in move.state.players], [False, True])
        self.assertFalse(sim.mark.is_simulated)
        self.assertFalse(sim.has_pending)

    async def test_failed_persist_stages_prediction(self):
        self.api.roll_results = [PullChannelError("HTTP 500: boom", status=500), PullChannelError("HTTP 500", 500)]
        sim = self._simulator(5)
        move = await sim.simulate(make_game((4, 0), ladders=[(9, 31)]), self._on_persisted)
        self.assertFalse(move.persisted)
        self.assertEqual(move.result.message, "Simulated move")
        self.assertEqual((move.result.dice, move.result.from_position, move.result.to_position), (5, 4, 31))
        self.assertEqual(move.state.players[0].position, 31)
        self.assertIs(sim.pending, move.state)
        self.assertTrue(sim.mark.is_simulated)
        self.assertEqual(sim.mark.last_simulated_at, 50.0)
        self.assertTrue(sim.grace_active())
        self.clock.now = 54.0
        self.assertFalse(sim.grace_active())

        await sim.wait_background()
        # the retry failed too; prediction stays pending
        self.assertTrue(sim.has_pending)
        self.assertEqual(self.persisted, [])

    async def test_slow_persist_counts_as_failure(self):
        self.api.roll_delay = 0.2
        sim = self._simulator(2)
        move = await sim.simulate(make_game((0, 0)), self._on_persisted)
        self.assertFalse(move.persisted)
        self.assertTrue(sim.mark.is_simulated)
        sim.close()

    async def test_reaching_last_square_finishes_game(self):
        self.api.roll_results = [PullChannelError("offline"), PullChannelError("offline")]
        sim = self._simulator(6)
        move = await sim.simulate(make_game((95, 3)), self._on_persisted)
        self.assertEqual(move.state.status, GameStatus.FINISHED)
        self.assertEqual(move.state.players[0].position, 100)
        await sim.wait_background()

    async def test_hazard_head_reports_head_square(self):
        self.api.roll_results = [PullChannelError("offline"), PullChannelError("offline")]
        sim = self._simulator(4)
        move = await sim.simulate(make_game((10, 0), snakes=[(14, 10)]), self._on_persisted)
        self.assertEqual(move.state.players[0].position, 10)
        self.assertEqual(move.follow_up_position, 14)
        self.assertTrue(move.result.requires_follow_up)
        await sim.wait_background()

    async def test_background_persist_clears_mark(self):
        confirmed = MoveResult(dice=2, from_position=0, to_position=2)
        self.api.roll_results = [PullChannelError("offline"), confirmed]
        sim = self._simulator(2)
        await sim.simulate(make_game((0, 0)), self._on_persisted)
        await sim.wait_background()
        self.assertEqual(self.persisted, [confirmed])
        self.assertFalse(sim.mark.is_simulated)
        self.assertFalse(sim.has_pending)

    async def test_older_background_persist_keeps_newer_prediction(self):
        self.api.roll_results = [PullChannelError("offline"), PullChannelError("offline")]
        sim = self._simulator(2)
        newer = await sim.simulate(make_game((0, 0)), self._on_persisted)
        await sim.wait_background()
        # retry of an earlier roll lands after the newer prediction was staged
        await sim._persist_later("7", make_game((0, 0)), self._on_persisted)
        self.assertIs(sim.pending, newer.state)
        self.assertTrue(sim.mark.is_simulated)
        self.assertEqual(len(self.persisted), 1)

    async def test_discard_only_drops_matching_prediction(self):
        self.api.roll_results = [PullChannelError("offline"), PullChannelError("offline")]
        sim = self._simulator(2)
        move = await sim.simulate(make_game((0, 0)), self._on_persisted)
        await sim.wait_background()
        sim.discard(make_game((5, 5)))
        self.assertIs(sim.pending, move.state)
        sim.discard(move.state)
        self.assertFalse(sim.has_pending)
        self.assertFalse(sim.mark.is_simulated)

    async def test_take_pending_clears_mark(self):
        self.api.roll_results = [PullChannelError("offline"), PullChannelError("offline")]
        sim = self._simulator(1)
        move = await sim.simulate(make_game((0, 0)), self._on_persisted)
        await sim.wait_background()
        self.assertIs(sim.take_pending(), move.state)
        self.assertFalse(sim.mark.is_simulated)
        self.assertIsNone(sim.take_pending())

    async def test_no_turn_flag_moves_first_player(self):
        sim = self._simulator(3)
        self.api.roll_results = [MoveResult(dice=3, from_position=0, to_position=3)]
        move = await sim.simulate(make_game((0, 0), turn=-1), self._on_persisted)
        self.assertEqual(move.mover_id, "1")
        self.assertEqual(move.state.players[0].position, 3)


if __name__ == '__main__':
    unittest.main()
