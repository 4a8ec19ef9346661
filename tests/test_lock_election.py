import multiprocessing
import tempfile
import unittest
from pathlib import Path


def _race_worker(lock_path: str, port: int, start, release, results) -> None:
    from krun_launch.lock import Acquired, acquire_or_discover

    start.wait()
    outcome = acquire_or_discover(port, lock_path=Path(lock_path))
    results.put((port, outcome.kind, getattr(outcome, "port", None)))
    if isinstance(outcome, Acquired):
        # Hold the lock until every racer has reported.
        release.wait(10)
        outcome.lock_file.close()


class TestLockElection(unittest.TestCase):
    def test_fresh_lock_file_is_created_acquired_and_published(self) -> None:
        from krun_launch.lock import Acquired, acquire_or_discover

        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "krun.lock"
            outcome = acquire_or_discover(40000, lock_path=path)
            try:
                self.assertIsInstance(outcome, Acquired)
                self.assertEqual(outcome.kind, "acquired")
                self.assertEqual(path.read_text(encoding="ascii"), "40000")
            finally:
                outcome.lock_file.close()

    def test_reelection_fully_overwrites_previous_port(self) -> None:
        from krun_launch.lock import Acquired, acquire_or_discover

        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "krun.lock"
            path.write_text("60000", encoding="ascii")
            outcome = acquire_or_discover(5000, lock_path=path)
            try:
                self.assertIsInstance(outcome, Acquired)
                self.assertEqual(path.read_bytes(), b"5000")
            finally:
                outcome.lock_file.close()

    def test_busy_reports_published_port(self) -> None:
        from krun_launch.lock import Busy, acquire_or_discover

        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "krun.lock"
            leader = acquire_or_discover(55123, lock_path=path)
            try:
                outcome = acquire_or_discover(41000, lock_path=path)
                self.assertIsInstance(outcome, Busy)
                self.assertEqual(outcome.port, 55123)
                # The loser never rewrites the leader's port.
                self.assertEqual(path.read_text(encoding="ascii"), "55123")
            finally:
                leader.lock_file.close()

    def test_busy_with_reserved_or_garbage_port_reports_none(self) -> None:
        from krun_launch.lock import Busy, acquire_or_discover, publish_port

        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "krun.lock"
            leader = acquire_or_discover(55123, lock_path=path)
            try:
                for content in (b"42", b"1024", b"not-a-port", b"", b"-3000", b"70000"):
                    leader.lock_file.seek(0)
                    leader.lock_file.truncate(0)
                    leader.lock_file.write(content)
                    leader.lock_file.flush()
                    outcome = acquire_or_discover(41000, lock_path=path)
                    self.assertIsInstance(outcome, Busy)
                    self.assertIsNone(outcome.port, content)

                publish_port(leader.lock_file, 1025)
                self.assertEqual(acquire_or_discover(41000, lock_path=path).port, 1025)
            finally:
                leader.lock_file.close()

    def test_released_lock_can_be_taken_over(self) -> None:
        from krun_launch.lock import Acquired, acquire_or_discover
        from krun_launch.util.file_lock import release_lockfile

        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "krun.lock"
            first = acquire_or_discover(50001, lock_path=path)
            release_lockfile(first.lock_file)

            second = acquire_or_discover(50002, lock_path=path)
            try:
                self.assertIsInstance(second, Acquired)
                self.assertEqual(path.read_text(encoding="ascii"), "50002")
            finally:
                second.lock_file.close()

    def test_parse_published_port(self) -> None:
        from krun_launch.lock import parse_published_port, read_published_port

        self.assertEqual(parse_published_port(b"55123"), 55123)
        self.assertEqual(parse_published_port("55123\n"), 55123)
        self.assertIsNone(parse_published_port(b"42"))
        self.assertIsNone(parse_published_port(b"55 123"))
        self.assertIsNone(parse_published_port(b"+55123"))
        self.assertEqual(parse_published_port(b"65535"), 65535)
        self.assertIsNone(parse_published_port(b"65536"))
        self.assertIsNone(parse_published_port(b"70000"))

        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "krun.lock"
            self.assertIsNone(read_published_port(path))
            path.write_bytes(b"55123")
            self.assertEqual(read_published_port(path), 55123)

    def test_unpublishable_candidate_port_is_rejected_before_locking(self) -> None:
        from krun_launch.errors import ConfigurationError
        from krun_launch.lock import acquire_or_discover

        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "krun.lock"
            for port in (80, 1024, 65536, 70000):
                with self.assertRaises(ConfigurationError):
                    acquire_or_discover(port, lock_path=path)
            self.assertFalse(path.exists())

    def test_only_one_of_many_processes_becomes_leader(self) -> None:
        ctx = multiprocessing.get_context("fork")
        with tempfile.TemporaryDirectory() as td:
            lock_path = str(Path(td) / "krun.lock")
            start = ctx.Event()
            release = ctx.Event()
            results = ctx.Queue()
            ports = [52000 + i for i in range(6)]
            procs = [ctx.Process(target=_race_worker, args=(lock_path, p, start, release, results)) for p in ports]
            for proc in procs:
                proc.start()
            start.set()
            try:
                outcomes = [results.get(timeout=10) for _ in procs]
            finally:
                release.set()
                for proc in procs:
                    proc.join(10)

            winners = [o for o in outcomes if o[1] == "acquired"]
            losers = [o for o in outcomes if o[1] == "busy"]
            self.assertEqual(len(winners), 1)
            self.assertEqual(len(losers), len(ports) - 1)
            winner_port = winners[0][0]
            for _, _, seen in losers:
                self.assertIn(seen, (winner_port, None))


class TestInspectLeader(unittest.TestCase):
    def test_no_lock_file_means_no_leader(self) -> None:
        from krun_launch.lock import inspect_leader

        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "krun.lock"
            status = inspect_leader(lock_path=path)
            self.assertFalse(status.leader)
            self.assertIsNone(status.port)
            self.assertFalse(path.exists())

    def test_inspect_sees_live_leader_and_stale_file(self) -> None:
        from krun_launch.lock import acquire_or_discover, inspect_leader

        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "krun.lock"
            leader = acquire_or_discover(55123, lock_path=path)
            status = inspect_leader(lock_path=path)
            self.assertTrue(status.leader)
            self.assertEqual(status.port, 55123)
            self.assertEqual(status.to_dict()["lock_path"], str(path))

            leader.lock_file.close()
            status = inspect_leader(lock_path=path)
            self.assertFalse(status.leader)
            # Inspecting never rewrites the file.
            self.assertEqual(path.read_text(encoding="ascii"), "55123")


if __name__ == "__main__":
    unittest.main()
