import unittest
import logging

from models.plan import DistanceDuration, IntensityTarget, PlanStep, TimeDuration, UntilFinished
from plans.adherence import PlanAdherenceTracker, Reading, TrackerState, target_in_band

# Suppress logging output during tests
logging.basicConfig(level=logging.CRITICAL)


def timed(seconds, target=None, name='step'):
    return PlanStep(name=name, duration=TimeDuration(seconds), targets=(target,) if target else ())


class TestPlanAdherenceTracker(unittest.TestCase):
    def setUp(self):
        self.tracker = PlanAdherenceTracker([timed(60), timed(30), timed(90)])

    def test_awaiting_start_before_first_tick(self):
        state = self.tracker.state()
        self.assertEqual(state.state, TrackerState.AWAITING_START)
        self.assertEqual(state.step_index, -1)
        self.assertIsNone(state.score)

    def test_step_index_follows_session_clock(self):
        """Steps of 60, 30 and 90 s: third step is current after 91 s."""
        for elapsed in range(0, 92):
            state = self.tracker.on_session_tick(float(elapsed))
        self.assertEqual(state.step_index, 2)
        self.assertEqual(state.state, TrackerState.IN_STEP)
        self.assertAlmostEqual(state.elapsed_in_step, 1.0)

    def test_explicit_begin_anchors_first_step(self):
        state = self.tracker.begin(10.0)
        self.assertEqual(state.step_index, 0)
        self.assertEqual(self.tracker.on_session_tick(69.0).step_index, 0)
        self.assertEqual(self.tracker.on_session_tick(70.0).step_index, 1)

    def test_plan_completes_after_total_duration(self):
        for elapsed in range(0, 181):
            state = self.tracker.on_session_tick(float(elapsed))
        self.assertEqual(state.state, TrackerState.PLAN_COMPLETE)
        self.assertIsNone(state.current_step)

        # Further ticks change nothing
        again = self.tracker.on_session_tick(500.0)
        self.assertEqual(again.state, TrackerState.PLAN_COMPLETE)

    def test_step_index_never_decreases(self):
        previous = -1
        for elapsed in [0, 10, 70, 65, 95, 40, 200]:
            index = self.tracker.on_session_tick(float(elapsed)).step_index
            self.assertGreaterEqual(index, previous)
            previous = index

    def test_large_jump_completes_several_steps(self):
        self.tracker.on_session_tick(0.0)
        state = self.tracker.on_session_tick(100.0)
        self.assertEqual(state.step_index, 2)
        self.assertEqual(state.steps_completed, 2)
        # Step boundaries carry over: the third step started at 90 s
        self.assertAlmostEqual(state.elapsed_in_step, 10.0)

    def test_sync_advances_without_scoring(self):
        self.tracker.begin(0.0)
        state = self.tracker.sync(95.0)
        self.assertEqual(state.step_index, 2)
        self.assertEqual(state.steps_completed, 2)
        self.assertEqual(state.total_ticks, 0)
        self.assertAlmostEqual(state.elapsed_in_step, 5.0)

        # A sync that completes nothing keeps the last completion count
        self.assertEqual(self.tracker.sync(96.0).steps_completed, 2)
        self.assertEqual(self.tracker.sync(180.0).state, TrackerState.PLAN_COMPLETE)

    def test_sync_never_moves_backwards(self):
        self.tracker.on_session_tick(0.0)
        self.tracker.on_session_tick(70.0)
        state = self.tracker.sync(20.0)
        self.assertEqual(state.step_index, 1)
        self.assertEqual(state.total_ticks, 2)

    def test_malformed_step_is_skipped_with_warning(self):
        tracker = PlanAdherenceTracker([PlanStep(name='Broken', duration=None), timed(60)])
        with self.assertLogs('plans.adherence', level='WARNING') as logs:
            state = tracker.on_session_tick(0.0)
        self.assertEqual(state.step_index, 1)
        self.assertTrue(any('Broken' in message for message in logs.output))

    def test_distance_step_completes_on_distance(self):
        tracker = PlanAdherenceTracker([PlanStep(name='1k', duration=DistanceDuration(1000)), timed(60)])
        tracker.on_session_tick(0.0, distance=0.0)
        self.assertEqual(tracker.on_session_tick(200.0, distance=999.0).step_index, 0)
        state = tracker.on_session_tick(201.0, distance=1000.0)
        self.assertEqual(state.step_index, 1)

    def test_until_finished_waits_for_manual_advance(self):
        tracker = PlanAdherenceTracker([PlanStep(name='Free', duration=UntilFinished()), timed(60)])
        tracker.on_session_tick(0.0)
        self.assertEqual(tracker.on_session_tick(5000.0).step_index, 0)

        state = tracker.advance_manually(5000.0)
        self.assertEqual(state.step_index, 1)
        self.assertEqual(tracker.on_session_tick(5059.0).step_index, 1)
        self.assertEqual(tracker.on_session_tick(5060.0).state, TrackerState.PLAN_COMPLETE)

    def test_empty_plan_completes_immediately(self):
        tracker = PlanAdherenceTracker([])
        self.assertEqual(tracker.on_session_tick(0.0).state, TrackerState.PLAN_COMPLETE)

    def test_adherence_score_counts_in_band_ticks(self):
        tracker = PlanAdherenceTracker([timed(600, IntensityTarget('%FTP', 100))], ftp=200)
        tracker.on_session_tick(0.0, Reading(power=200.0))
        tracker.on_session_tick(1.0, Reading(power=215.0))
        state = tracker.on_session_tick(2.0, Reading(power=205.0))
        self.assertEqual(state.total_ticks, 3)
        self.assertEqual(state.in_band_ticks, 2)
        self.assertAlmostEqual(state.score, 2 / 3)

    def test_missing_reading_is_out_of_band(self):
        tracker = PlanAdherenceTracker([timed(600, IntensityTarget('%FTP', 100))], ftp=200)
        state = tracker.on_session_tick(0.0)
        self.assertEqual(state.in_band_ticks, 0)


class TestTargetInBand(unittest.TestCase):
    def test_no_target_is_in_band(self):
        self.assertTrue(target_in_band(None, Reading()))

    def test_percent_of_threshold_targets(self):
        target = IntensityTarget('%ThresholdHR', 90)
        self.assertTrue(target_in_band(target, Reading(heart_rate=150.0), threshold_hr=160))
        self.assertFalse(target_in_band(target, Reading(heart_rate=160.0), threshold_hr=160))
        # Unconfigured threshold cannot be judged
        self.assertTrue(target_in_band(target, Reading(heart_rate=100.0)))

    def test_absolute_targets(self):
        self.assertTrue(target_in_band(IntensityTarget('watts', 300), Reading(power=314.0)))
        self.assertFalse(target_in_band(IntensityTarget('watts', 300), Reading(power=316.0)))
        self.assertTrue(target_in_band(IntensityTarget('bpm', 150), Reading(heart_rate=155.0)))
        self.assertFalse(target_in_band(IntensityTarget('cadence', 90), Reading(cadence=80.0)))
        self.assertTrue(target_in_band(IntensityTarget('speed', 10), Reading(speed=10.4)))

    def test_rpe_without_reading_is_in_band(self):
        self.assertTrue(target_in_band(IntensityTarget('RPE', 7), Reading()))
        self.assertFalse(target_in_band(IntensityTarget('RPE', 7), Reading(rpe=9.0)))


if __name__ == '__main__':
    unittest.main()
