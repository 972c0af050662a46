import unittest
import logging
import shutil
import tempfile
import threading
import time
from pathlib import Path
from unittest.mock import patch

from models.sample import Position, Sample
from models.session import RecorderStatus, SessionConfig
from recorder.service import ActivityRecorderService, RecorderSnapshot, SessionStateConflict
from recorder.uploader import JsonLinesExporter, UploadResult
from plans.adherence import TrackerState
from storage.sample_buffer import BufferWriteFailed, SampleBuffer

# Suppress logging output during tests
logging.basicConfig(level=logging.CRITICAL)


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class RecordingUploader:
    def __init__(self):
        self.uploaded = []

    def upload(self, sealed):
        self.uploaded.append(sealed)
        return UploadResult(success=True, remote_id=f"remote-{sealed.session_id}")


class FailingUploader:
    def upload(self, sealed):
        raise ConnectionError('network unreachable')


class TestRecorderService(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.buffer = SampleBuffer('sqlite://', retry_delay=0)
        self.service = ActivityRecorderService(self.buffer, clock=self.clock)
        self.config = SessionConfig(ftp=200, threshold_hr=150, max_hr=190)

    def tearDown(self):
        self.buffer.close()

    def _record(self, start, stop, **channels):
        for t in range(start, stop):
            self.clock.now = float(t)
            self.service.on_sensor_sample(Sample(timestamp=float(t), **channels))

    def test_one_hour_at_ftp(self):
        """3600 one-second samples at FTP: NP = FTP, IF = 1, TSS = 100."""
        self.service.start(self.config)
        self._record(0, 3600, power=200.0, heart_rate=150.0)
        self.clock.now = 3600.0

        snapshot = self.service.get_snapshot()
        self.assertAlmostEqual(snapshot.session.moving_seconds, 3600.0)
        self.assertAlmostEqual(snapshot.derived.normalized_power, 200.0, places=6)
        self.assertAlmostEqual(snapshot.derived.intensity_factor, 1.0, places=6)
        self.assertAlmostEqual(snapshot.derived.training_stress_score, 100.0, places=4)
        self.assertAlmostEqual(snapshot.derived.decoupling, 0.0, places=6)
        self.assertEqual(snapshot.metrics.power_zone_seconds[3], 3600)
        # Sample-covered time charges the training load
        self.assertAlmostEqual(snapshot.metrics.moving_seconds, 3600.0)

        sealed = self.service.stop()
        self.assertEqual(sealed.sample_count, 3600)
        self.assertFalse(sealed.degraded)
        self.assertEqual(self.service.status, RecorderStatus.STOPPED)

    def test_pause_is_excluded_from_moving_time(self):
        self.service.start(self.config)
        self._record(0, 600, power=150.0)

        self.clock.now = 600.0
        self.service.pause()
        for t in range(600, 720):
            self.clock.now = float(t)
            recorded = self.service.on_sensor_sample(
                Sample(timestamp=float(t), power=150.0, position=Position(45.0, 7.0)))
            self.assertFalse(recorded)

        self.clock.now = 720.0
        self.service.resume()
        self._record(720, 1320, power=150.0)
        self.clock.now = 1320.0

        session = self.service.get_snapshot().session
        self.assertAlmostEqual(session.moving_seconds, 1200.0)
        self.assertAlmostEqual(session.elapsed_seconds, 1320.0)
        self.assertAlmostEqual(session.paused_seconds, 120.0)
        # Position still tracked while paused
        self.assertEqual(session.last_position, Position(45.0, 7.0))
        self.assertEqual(self.service.stop().sample_count, 1200)

    def test_lifecycle_conflicts(self):
        with self.assertRaises(SessionStateConflict):
            self.service.pause()
        with self.assertRaises(SessionStateConflict):
            self.service.stop()

        first = self.service.start(self.config)
        with self.assertRaises(SessionStateConflict):
            self.service.start(self.config)
        with self.assertRaises(SessionStateConflict):
            self.service.resume()

        self.service.stop()
        with self.assertRaises(SessionStateConflict):
            self.service.resume()

        second = self.service.start(self.config)
        self.assertNotEqual(first, second)

    def test_samples_ignored_when_not_recording(self):
        self.assertFalse(self.service.on_sensor_sample(Sample(timestamp=0.0, power=100.0)))
        self.service.start(self.config)
        self.service.stop()
        self.assertFalse(self.service.on_sensor_sample(Sample(timestamp=1.0, power=100.0)))

    def test_buffer_failure_switches_to_degraded_mode(self):
        self.service.start(self.config)
        self._record(0, 5, power=200.0)

        with patch.object(self.buffer, 'append', side_effect=BufferWriteFailed('disk full')):
            self._record(5, 10, power=200.0)
            snapshot = self.service.get_snapshot()
            self.assertTrue(snapshot.buffer_degraded)
            self.assertEqual(snapshot.metrics.sample_count, 10)

        sealed = self.service.stop()
        self.assertTrue(sealed.degraded)
        self.assertEqual(sealed.sample_count, 10)
        self.assertEqual([s.timestamp for s in sealed.samples], [float(t) for t in range(10)])

    def test_unflushable_samples_are_kept_in_memory(self):
        self.service.start(self.config)
        with patch.object(self.buffer, 'append', side_effect=BufferWriteFailed('disk full')):
            self._record(0, 5, power=200.0)
            sealed = self.service.stop()

        self.assertTrue(sealed.degraded)
        self.assertEqual(sealed.sample_count, 5)

    def test_subscribers_are_throttled(self):
        received = []
        unsubscribe = self.service.subscribe(received.append)

        self.service.start(self.config)
        self.assertEqual(len(received), 1)

        for i in range(9):
            self.clock.now = i * 0.25
            self.service.on_sensor_sample(Sample(timestamp=self.clock.now, power=200.0))
        self.assertEqual(len(received), 3)
        self.assertTrue(all(isinstance(s, RecorderSnapshot) for s in received))

        # Lifecycle changes always notify
        self.service.pause()
        self.assertEqual(len(received), 4)
        self.assertEqual(received[-1].status, RecorderStatus.PAUSED)

        unsubscribe()
        self.service.resume()
        self.assertEqual(len(received), 4)

    def test_failing_subscriber_does_not_break_ingestion(self):
        def broken(snapshot):
            raise RuntimeError('ui crashed')

        self.service.subscribe(broken)
        self.service.start(self.config)
        self.assertTrue(self.service.on_sensor_sample(Sample(timestamp=0.0, power=100.0)))

    def test_plan_tracking_uses_moving_time(self):
        self.service.select_plan({'name': 'Ladder', 'steps': [
            {'name': 'A', 'duration': 60},
            {'name': 'B', 'duration': 30},
            {'name': 'C', 'duration': 90},
        ]})
        self.service.start(self.config)
        self._record(0, 91, power=200.0)

        snapshot = self.service.get_snapshot()
        self.assertEqual(snapshot.session.plan_name, 'Ladder')
        self.assertEqual(snapshot.adherence.step_index, 2)
        self.assertEqual(snapshot.adherence.current_step.name, 'C')

        self._record(91, 200, power=200.0)
        self.assertEqual(self.service.get_snapshot().adherence.state, TrackerState.PLAN_COMPLETE)

    def test_select_plan_mid_session_and_manual_advance(self):
        self.service.start(self.config)
        self._record(0, 10, power=200.0)
        self.service.select_plan([{'name': 'Free ride', 'duration': {'type': 'untilFinished'}},
                                  {'name': 'Cooldown', 'duration': 300}])

        self._record(10, 20, power=200.0)
        self.assertEqual(self.service.get_snapshot().adherence.step_index, 0)
        state = self.service.advance_step()
        self.assertEqual(state.current_step.name, 'Cooldown')

        self.service.clear_plan()
        self.assertIsNone(self.service.get_snapshot().adherence)

    def test_stop_hands_recording_to_uploader(self):
        uploader = RecordingUploader()
        session_id = self.service.start(self.config)
        self._record(0, 3, power=200.0)

        sealed = self.service.stop(uploader=uploader)
        self.assertEqual(uploader.uploaded, [sealed])
        self.assertEqual(self.service.last_upload_result.remote_id, f"remote-{session_id}")

    def test_uploader_failure_does_not_lose_recording(self):
        self.service.start(self.config)
        self._record(0, 3, power=200.0)

        sealed = self.service.stop(uploader=FailingUploader())
        self.assertEqual(sealed.sample_count, 3)
        self.assertFalse(self.service.last_upload_result.success)
        self.assertIn('network unreachable', self.service.last_upload_result.error)

    def test_plan_follows_session_clock_across_sensor_gap(self):
        self.service.select_plan([{'name': 'First', 'duration': 60}, {'name': 'Second', 'duration': 60}])
        self.service.start(self.config)
        self._record(0, 10, power=200.0)
        self.clock.now = 100.0
        self.service.on_sensor_sample(Sample(timestamp=100.0, power=200.0))

        snapshot = self.service.get_snapshot()
        self.assertAlmostEqual(snapshot.session.moving_seconds, 100.0)
        self.assertEqual(snapshot.adherence.step_index, 1)
        self.assertEqual(snapshot.adherence.current_step.name, 'Second')
        # Training load only counts the time the samples cover
        self.assertAlmostEqual(snapshot.metrics.moving_seconds, 11.0)

        self.clock.now = 130.0
        state = self.service.tick()
        self.assertEqual(state.state, TrackerState.PLAN_COMPLETE)

    def test_time_steps_finish_without_samples(self):
        self.service.select_plan([{'name': 'First', 'duration': 60}, {'name': 'Second', 'duration': 60}])
        self.service.start(self.config)

        self.clock.now = 61.0
        self.assertEqual(self.service.get_snapshot().adherence.step_index, 1)

        self.service.pause()
        self.clock.now = 200.0
        self.assertEqual(self.service.get_snapshot().adherence.step_index, 1)
        self.assertIsNone(self.service.tick())

        self.service.resume()
        self.clock.now = 258.0
        self.assertEqual(self.service.tick().step_index, 1)
        self.clock.now = 259.0
        self.assertEqual(self.service.tick().state, TrackerState.PLAN_COMPLETE)

    def test_running_tss_from_threshold_pace(self):
        """600 s at 4 m/s (250 s/km) against a 300 s/km threshold."""
        self.service.start(SessionConfig(threshold_pace=300))
        self._record(0, 600, speed=4.0)

        derived = self.service.get_snapshot().derived
        self.assertAlmostEqual(derived.running_tss, (300 / 250) ** 2 * (600 / 3600) * 100)
        self.assertIsNone(derived.training_stress_score)

    def test_snapshots_during_ingestion_are_consistent(self):
        self.service.start(self.config)
        finished = threading.Event()

        def ingest():
            for t in range(1500):
                self.service.on_sensor_sample(Sample(timestamp=float(t), power=200.0, heart_rate=150.0))
            finished.set()

        worker = threading.Thread(target=ingest)
        worker.start()
        counts = []
        while not finished.is_set():
            metrics = self.service.get_snapshot().metrics
            counts.append(metrics.sample_count)
            # Every one-second sample adds 200 J
            self.assertAlmostEqual(metrics.work_kj, metrics.moving_seconds * 0.2)
            self.assertAlmostEqual(metrics.moving_seconds, float(metrics.sample_count))
            time.sleep(0.001)
        worker.join()

        self.assertEqual(counts, sorted(counts))
        final = self.service.get_snapshot().metrics
        self.assertEqual(final.sample_count, 1500)
        self.assertAlmostEqual(final.normalized_power, 200.0, places=6)
        self.assertEqual(self.service.stop().sample_count, 1500)

    def test_start_with_sealed_session_id_conflicts(self):
        self.service.start(SessionConfig(ftp=200, session_id='morning-ride'))
        self.service.stop()

        with self.assertRaises(SessionStateConflict):
            self.service.start(SessionConfig(ftp=200, session_id='morning-ride'))
        self.assertEqual(self.service.status, RecorderStatus.STOPPED)

    def test_failed_seal_leaves_session_orphaned(self):
        session_id = self.service.start(self.config)
        self._record(0, 3, power=200.0)

        with patch.object(self.buffer, 'finalize', side_effect=BufferWriteFailed('disk full')):
            sealed = self.service.stop()
        self.assertTrue(sealed.degraded)
        self.assertEqual(sealed.sample_count, 3)

        self.assertEqual(self.service.list_orphaned(), [session_id])
        with self.assertRaises(SessionStateConflict):
            self.service.start(self.config)
        self.assertEqual(self.service.recover_or_discard(session_id).sample_count, 3)



class TestOrphanedSessions(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.database_url = f"sqlite:///{Path(self.temp_dir) / 'buffer.db'}"

        crashed = SampleBuffer(self.database_url, retry_delay=0)
        crashed.append('crashed-ride', Sample(timestamp=0.0, power=180.0))
        crashed.append('crashed-ride', Sample(timestamp=1.0, power=190.0))
        crashed.close()

        self.buffer = SampleBuffer(self.database_url, retry_delay=0)
        self.service = ActivityRecorderService(self.buffer, clock=FakeClock())

    def tearDown(self):
        self.buffer.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_start_blocked_until_orphans_resolved(self):
        self.assertEqual(self.service.list_orphaned(), ['crashed-ride'])
        with self.assertRaises(SessionStateConflict):
            self.service.start(SessionConfig(ftp=200))

        recovered = self.service.recover_or_discard('crashed-ride', recover=True)
        self.assertEqual(recovered.sample_count, 2)
        self.assertEqual(self.service.list_orphaned(), [])
        self.service.start(SessionConfig(ftp=200))
        self.assertEqual(self.service.status, RecorderStatus.RECORDING)

    def test_discard_orphan(self):
        self.assertIsNone(self.service.recover_or_discard('crashed-ride', recover=False))
        self.assertEqual(self.buffer.read_all('crashed-ride'), [])

    def test_unknown_orphan_is_rejected(self):
        with self.assertRaises(SessionStateConflict):
            self.service.recover_or_discard('no-such-session')

    def test_recovered_session_can_be_exported(self):
        sealed = self.service.recover_or_discard('crashed-ride')
        result = JsonLinesExporter(Path(self.temp_dir) / 'export').upload(sealed)
        self.assertTrue(result.success)
        lines = Path(result.remote_id).read_text(encoding='utf-8').splitlines()
        self.assertEqual(len(lines), 2)


if __name__ == '__main__':
    unittest.main()
