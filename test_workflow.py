import json
import asyncio
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import storyboard
from storyboard import ConfigurationFailure, PlanningFailure, backends_for
from test_storyboard import FakeBackend, make_config
from workflow import AppState, Orchestrator, batched, describe_error, write_outputs


async def wait_for(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


def fixed(backend):
    return lambda config: (backend, backend)


def done_ids(snapshot):
    return {p["id"] for p in snapshot["panels"] if not p["loading"]}


class TestDescribeError(unittest.TestCase):
    def test_message_or_class_name(self):
        self.assertEqual(describe_error(RuntimeError("quota exceeded")), "quota exceeded")
        self.assertEqual(describe_error(TimeoutError()), "TimeoutError")


class TestBatching(unittest.TestCase):
    def test_nine_panels_three_batches(self):
        self.assertEqual(batched(list(range(1, 10)), 3), [[1, 2, 3], [4, 5, 6], [7, 8, 9]])

    def test_invalid_batch_size(self):
        with self.assertRaises(ValueError):
            Orchestrator(backend_factory=fixed(FakeBackend()), batch_size=0)


class TestRun(unittest.IsolatedAsyncioTestCase):
    async def test_robot_finds_a_flower(self):
        backend = FakeBackend(fail_positions={5})
        orchestrator = Orchestrator(backend_factory=fixed(backend))
        panels = await orchestrator.start(make_config())

        self.assertEqual(orchestrator.state, AppState.COMPLETE)
        self.assertEqual(len(panels), 9)
        self.assertTrue(all(not p.loading for p in panels))
        for p in panels:
            # exactly one of image / error
            self.assertNotEqual(p.image is None, p.error is None)
        self.assertIn("quota exceeded", orchestrator.get_panel(5).error)
        self.assertEqual(orchestrator.config.style, "Warm Watercolor")
        self.assertEqual(backend.plan_calls, 1)
        self.assertEqual(backend.describe_calls, 1)

    async def test_batches_are_ordered_and_applied_whole(self):
        backend = FakeBackend()
        orchestrator = Orchestrator(backend_factory=fixed(backend))
        snapshots = []
        orchestrator.subscribe(snapshots.append)
        await orchestrator.start(make_config())

        states = [s["state"] for s in snapshots]
        self.assertEqual(states[:3], ["INPUT", "PLANNING", "GENERATING"])
        self.assertEqual(states[-1], "COMPLETE")
        generating = [done_ids(s) for s in snapshots if s["state"] == "GENERATING"]
        self.assertEqual(generating, [set(), {1, 2, 3}, set(range(1, 7)), set(range(1, 10))])
        self.assertEqual(backend.max_in_flight, 3)
        self.assertEqual([set(backend.image_calls[i:i + 3]) for i in (0, 3, 6)],
                         [{1, 2, 3}, {4, 5, 6}, {7, 8, 9}])

    async def test_failure_is_isolated_to_its_panel(self):
        backend = FakeBackend(fail_positions={5})
        orchestrator = Orchestrator(backend_factory=fixed(backend))
        await orchestrator.start(make_config())

        for panel_id in (4, 6, 7, 8, 9):
            self.assertIsNotNone(orchestrator.get_panel(panel_id).image)
        self.assertIsNone(orchestrator.get_panel(5).image)
        self.assertEqual(sorted(backend.image_calls), list(range(1, 10)))

    async def test_text_only_model_completes_with_placeholders(self):
        backend = FakeBackend(text_only=True)
        orchestrator = Orchestrator(backend_factory=fixed(backend))
        panels = await orchestrator.start(make_config(model="gemini-2.0-flash"))
        self.assertTrue(all(p.image.is_fallback for p in panels))
        self.assertEqual(orchestrator.state, AppState.COMPLETE)

    async def test_planning_failure_returns_to_input(self):
        backend = FakeBackend(breakdown="I cannot help with that.")
        orchestrator = Orchestrator(backend_factory=fixed(backend))
        with self.assertRaises(PlanningFailure):
            await orchestrator.start(make_config())

        self.assertEqual(orchestrator.state, AppState.INPUT)
        self.assertEqual(orchestrator.panels, [])
        self.assertIsNone(orchestrator.config)
        self.assertTrue(orchestrator.snapshot()["error"])
        self.assertEqual(backend.image_calls, [])

    async def test_missing_reference_is_rejected_before_any_call(self):
        backend = FakeBackend()
        factory = mock.Mock(return_value=(backend, backend))
        orchestrator = Orchestrator(backend_factory=factory)
        with self.assertRaises(ConfigurationFailure):
            await orchestrator.start(make_config(reference_image=None))

        factory.assert_not_called()
        self.assertEqual(backend.plan_calls, 0)
        self.assertEqual(orchestrator.state, AppState.INPUT)

    async def test_missing_credential_is_rejected(self):
        orchestrator = Orchestrator(backend_factory=backends_for)
        with mock.patch.object(storyboard, "API_KEY", ""):
            with self.assertRaises(ConfigurationFailure):
                await orchestrator.start(make_config(api_key=None))
        self.assertEqual(orchestrator.state, AppState.INPUT)

    async def test_new_run_clears_character_memo(self):
        backend = FakeBackend()
        orchestrator = Orchestrator(backend_factory=fixed(backend))
        await orchestrator.start(make_config())
        await orchestrator.start(make_config(reference_image=b"other"))
        self.assertEqual(backend.describe_calls, 2)

    async def test_caller_supplied_run_id(self):
        orchestrator = Orchestrator(backend_factory=fixed(FakeBackend()))
        await orchestrator.start(make_config(), run_id="robot-flower-1")
        self.assertEqual(orchestrator.run_id, "robot-flower-1")
        self.assertEqual(orchestrator.snapshot()["run"], "robot-flower-1")


class TestRegenerate(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backend = FakeBackend(fail_positions={5})
        self.orchestrator = Orchestrator(backend_factory=fixed(self.backend))
        await self.orchestrator.start(make_config())

    async def test_failed_panel_recovers(self):
        self.backend.fail_positions.clear()
        before = {p.id: p for p in self.orchestrator.panels}
        snapshots = []
        self.orchestrator.subscribe(snapshots.append)

        panel = await self.orchestrator.regenerate(5)

        self.assertIsNotNone(panel.image)
        self.assertIsNone(panel.error)
        self.assertFalse(panel.loading)
        self.assertEqual([s["panels"][4]["loading"] for s in snapshots], [True, False])
        for p in self.orchestrator.panels:
            if p.id != 5:
                self.assertIs(p, before[p.id])
        self.assertEqual(self.orchestrator.state, AppState.COMPLETE)

    async def test_failing_again_records_error(self):
        panel = await self.orchestrator.regenerate(5)
        self.assertFalse(panel.loading)
        self.assertIsNone(panel.image)
        self.assertIn("quota exceeded", panel.error)

    async def test_successful_panel_can_fail_on_retry(self):
        self.backend.fail_positions = {2}
        panel = await self.orchestrator.regenerate(2)
        self.assertIsNone(panel.image)
        self.assertIsNotNone(panel.error)

    async def test_unknown_panel_is_noop(self):
        calls = len(self.backend.image_calls)
        self.assertIsNone(await self.orchestrator.regenerate(42))
        self.assertEqual(len(self.backend.image_calls), calls)

    async def test_without_run_is_noop(self):
        orchestrator = Orchestrator(backend_factory=fixed(self.backend))
        self.assertIsNone(await orchestrator.regenerate(1))
        self.assertEqual(orchestrator.state, AppState.INPUT)

    async def test_ignored_while_batches_run(self):
        backend = FakeBackend()
        backend.gates[1] = asyncio.Event()
        orchestrator = Orchestrator(backend_factory=fixed(backend))
        task = asyncio.create_task(orchestrator.start(make_config()))
        await wait_for(lambda: 1 in backend.image_calls)

        self.assertEqual(orchestrator.state, AppState.GENERATING)
        self.assertIsNone(orchestrator.regenerable(9))
        self.assertIsNone(await orchestrator.regenerate(9))
        self.assertNotIn(9, backend.image_calls)

        backend.gates[1].set()
        await task
        self.assertEqual(backend.image_calls.count(9), 1)
        self.assertLessEqual(backend.max_in_flight, 3)
        self.assertEqual(orchestrator.state, AppState.COMPLETE)

    async def test_second_retry_of_same_panel_is_ignored(self):
        self.backend.gates[5] = asyncio.Event()
        calls = len(self.backend.image_calls)
        first = asyncio.create_task(self.orchestrator.regenerate(5))
        await wait_for(lambda: len(self.backend.image_calls) > calls)

        self.assertTrue(self.orchestrator.get_panel(5).loading)
        self.assertIsNone(await self.orchestrator.regenerate(5))
        self.assertEqual(len(self.backend.image_calls), calls + 1)

        self.backend.gates[5].set()
        panel = await first
        self.assertFalse(panel.loading)


class TestReset(unittest.IsolatedAsyncioTestCase):
    async def test_reset_discards_everything(self):
        backend = FakeBackend()
        orchestrator = Orchestrator(backend_factory=fixed(backend))
        await orchestrator.start(make_config())
        orchestrator.reset()

        self.assertEqual(orchestrator.state, AppState.INPUT)
        self.assertEqual(orchestrator.panels, [])
        self.assertIsNone(orchestrator.config)
        self.assertIsNone(orchestrator.run_id)

    async def test_batch_completing_after_reset_is_inert(self):
        backend = FakeBackend()
        backend.gates[1] = asyncio.Event()
        orchestrator = Orchestrator(backend_factory=fixed(backend))
        task = asyncio.create_task(orchestrator.start(make_config()))
        await wait_for(lambda: 1 in backend.image_calls)

        orchestrator.reset()
        snapshots = []
        orchestrator.subscribe(snapshots.append)
        backend.gates[1].set()

        self.assertEqual(await task, [])
        self.assertEqual(snapshots, [])
        self.assertEqual(orchestrator.state, AppState.INPUT)
        self.assertEqual(orchestrator.panels, [])

    async def test_stale_run_cannot_touch_the_next_run(self):
        first = FakeBackend(color="red")
        first.gates[2] = asyncio.Event()
        second = FakeBackend(color="green")
        queue = [first, second]
        orchestrator = Orchestrator(backend_factory=lambda config: (queue[0], queue.pop(0)))

        stale = asyncio.create_task(orchestrator.start(make_config()))
        await wait_for(lambda: 2 in first.image_calls)
        orchestrator.reset()

        await orchestrator.start(make_config())
        run_id = orchestrator.run_id
        first.gates[2].set()
        await stale

        self.assertEqual(orchestrator.run_id, run_id)
        self.assertEqual(orchestrator.state, AppState.COMPLETE)
        self.assertTrue(all(p.image.data == second.image.data for p in orchestrator.panels))

    async def test_regenerate_resolving_after_reset_is_inert(self):
        backend = FakeBackend()
        orchestrator = Orchestrator(backend_factory=fixed(backend))
        await orchestrator.start(make_config())

        backend.gates[4] = asyncio.Event()
        calls = len(backend.image_calls)
        task = asyncio.create_task(orchestrator.regenerate(4))
        await wait_for(lambda: len(backend.image_calls) > calls)
        orchestrator.reset()
        backend.gates[4].set()

        self.assertIsNone(await task)
        self.assertEqual(orchestrator.panels, [])
        self.assertEqual(orchestrator.state, AppState.INPUT)


class TestOutputs(unittest.IsolatedAsyncioTestCase):
    async def test_write_outputs(self):
        backend = FakeBackend(fail_positions={9})
        orchestrator = Orchestrator(backend_factory=fixed(backend))
        await orchestrator.start(make_config())

        with tempfile.TemporaryDirectory() as tmp:
            out = Path(tmp) / "run"
            grid_path = write_outputs(orchestrator, out)
            manifest = json.loads((out / "manifest.json").read_text(encoding="utf-8"))

            self.assertTrue(grid_path.exists())
            self.assertEqual(len(manifest["panels"]), 9)
            self.assertEqual(manifest["meta"]["run"], orchestrator.run_id)
            self.assertEqual(manifest["panels"][0]["file"], "panel-01.png")
            self.assertIsNone(manifest["panels"][8]["file"])
            self.assertTrue((out / "panel-01.png").exists())


if __name__ == "__main__":
    unittest.main()
