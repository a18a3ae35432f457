import asyncio
import unittest

from chatsync.sweeper import Sweeper


class SweeperTests(unittest.IsolatedAsyncioTestCase):
    async def test_runs_until_stopped(self):
        calls = []
        sweeper = Sweeper(lambda: calls.append(1), 0.01)

        sweeper.start()
        sweeper.start()
        await asyncio.sleep(0.05)
        await sweeper.stop()
        count = len(calls)
        await asyncio.sleep(0.03)

        self.assertGreater(count, 0)
        self.assertEqual(len(calls), count)
        self.assertFalse(sweeper.running)
        await sweeper.stop()

    async def test_failing_sweep_keeps_loop_alive(self):
        calls = []

        def sweep():
            calls.append(1)
            raise RuntimeError("boom")

        sweeper = Sweeper(sweep, 0.01, name="broken")
        with self.assertLogs("chatsync.sweeper", level="ERROR"):
            sweeper.start()
            await asyncio.sleep(0.05)
        self.assertTrue(sweeper.running)
        await sweeper.stop()

        self.assertGreater(len(calls), 1)


if __name__ == "__main__":
    unittest.main()
