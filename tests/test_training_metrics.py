import unittest
import logging
from datetime import date

import numpy as np

from analyzers import training_metrics
from analyzers.training_metrics import (
    analyze_training_load, decoupling, efficiency_factor, form_status, grade_analysis,
    intensity_factor, mean_max_power, normalized_power, per_second_power, project_ctl,
    recommended_tss, training_load, training_load_series, training_stress_score,
    variability_index, vam, zone_distribution,
)
from models.zones import ZoneCalculator

# Suppress logging output during tests
logging.basicConfig(level=logging.CRITICAL)


class TestPowerMetrics(unittest.TestCase):
    def test_normalized_power_constant_effort(self):
        """Steady power gives NP equal to that power."""
        self.assertAlmostEqual(normalized_power([200.0] * 60), 200.0, places=6)

    def test_normalized_power_needs_full_window(self):
        """Fewer than 30 one-second values cannot produce NP."""
        self.assertIsNone(normalized_power([250.0] * 29))
        self.assertIsNone(normalized_power([]))

    def test_normalized_power_only_counts_full_windows(self):
        """With exactly one full window NP is that window's average."""
        values = [100.0] * 15 + [300.0] * 15
        self.assertAlmostEqual(normalized_power(values), 200.0, places=6)

    def test_normalized_power_weights_surges(self):
        """Variable power gives NP above the average power."""
        values = ([100.0] * 30 + [400.0] * 30) * 5
        np_value = normalized_power(values)
        self.assertGreater(np_value, np.mean(values))

    def test_per_second_power_is_order_invariant_within_a_second(self):
        """Samples within one second are averaged regardless of arrival order."""
        in_order = per_second_power([0.1, 0.6, 1.2, 1.7], [100, 300, 150, 250])
        shuffled = per_second_power([0.6, 0.1, 1.7, 1.2], [300, 100, 250, 150])
        self.assertEqual(in_order, [200.0, 200.0])
        self.assertEqual(in_order, shuffled)

    def test_per_second_power_skips_missing_readings(self):
        self.assertEqual(per_second_power([0.0, 1.0, 2.0], [100, None, 300]), [100.0, 300.0])

    def test_intensity_factor_and_tss(self):
        """One hour at FTP is 100 TSS."""
        self.assertAlmostEqual(intensity_factor(250, 250), 1.0)
        self.assertAlmostEqual(training_stress_score(3600, 250, 250), 100.0)

    def test_tss_is_linear_in_duration(self):
        one_hour = training_stress_score(3600, 180, 200)
        two_hours = training_stress_score(7200, 180, 200)
        self.assertAlmostEqual(two_hours, 2 * one_hour)

    def test_tss_requires_ftp(self):
        self.assertIsNone(intensity_factor(200, None))
        self.assertIsNone(training_stress_score(3600, 200, None))
        self.assertIsNone(training_stress_score(3600, None, 250))
        self.assertEqual(training_stress_score(0, 200, 250), 0.0)

    def test_heart_rate_tss(self):
        self.assertAlmostEqual(training_metrics.heart_rate_tss(150, 150, 3600), 100.0)
        self.assertIsNone(training_metrics.heart_rate_tss(150, None, 3600))

    def test_running_tss(self):
        """One hour at threshold pace is 100; faster than threshold scores higher."""
        self.assertAlmostEqual(training_metrics.running_tss(300, 300, 3600), 100.0)
        self.assertAlmostEqual(training_metrics.running_tss(250, 300, 1800), 1.44 * 50)
        self.assertEqual(training_metrics.running_tss(300, 0, 3600), 0.0)
        self.assertEqual(training_metrics.running_tss(300, 300, 0), 0.0)
        self.assertIsNone(training_metrics.running_tss(None, 300, 3600))
        self.assertIsNone(training_metrics.running_tss(300, None, 3600))

    def test_pace_from_speed(self):
        self.assertAlmostEqual(training_metrics.pace_from_speed(4.0), 250.0)
        self.assertIsNone(training_metrics.pace_from_speed(0.0))
        self.assertIsNone(training_metrics.pace_from_speed(None))

    def test_variability_index(self):
        self.assertAlmostEqual(variability_index(220, 200), 1.1)
        self.assertIsNone(variability_index(220, 0))
        self.assertIsNone(variability_index(None, 200))

    def test_efficiency_factor_falls_back_to_average_power(self):
        self.assertAlmostEqual(efficiency_factor(150, np_value=200), 200 / 150)
        self.assertAlmostEqual(efficiency_factor(150, avg_power=180), 1.2)
        self.assertIsNone(efficiency_factor(None, np_value=200))

    def test_decoupling_steady_state(self):
        """Constant output and heart rate means no decoupling."""
        self.assertAlmostEqual(decoupling([200.0] * 100, [140.0] * 100), 0.0)

    def test_decoupling_detects_cardiac_drift(self):
        """Heart rate drifting up at constant power is negative decoupling."""
        power = [200.0] * 100
        hr = [140.0] * 50 + [150.0] * 50
        self.assertAlmostEqual(decoupling(power, hr), (140 / 150 - 1) * 100, places=6)

    def test_decoupling_needs_both_channels(self):
        self.assertIsNone(decoupling([200.0] * 10, [None] * 10))
        self.assertIsNone(decoupling([200.0], [140.0]))

    def test_mean_max_power(self):
        curve = mean_max_power([100.0] * 60 + [300.0] * 5)
        self.assertAlmostEqual(curve[5], 300.0)
        self.assertAlmostEqual(curve[30], (25 * 100 + 5 * 300) / 30)
        self.assertNotIn(300, curve)


class TestTrainingLoad(unittest.TestCase):
    def test_ctl_after_one_time_constant(self):
        """After 42 days of constant load CTL reaches 1 - 1/e of it."""
        load = training_load([100.0] * 42)
        self.assertAlmostEqual(load.ctl, 100 * (1 - np.exp(-1)), places=6)

    def test_ctl_converges_to_constant_load(self):
        load = training_load([100.0] * 600)
        self.assertAlmostEqual(load.ctl, 100.0, delta=0.01)
        self.assertAlmostEqual(load.atl, 100.0, delta=0.01)

    def test_tsb_is_ctl_minus_atl_every_day(self):
        series = training_load_series([50, 0, 120, 80, 0, 0, 200, 90])
        np.testing.assert_allclose(series['tsb'], series['ctl'] - series['atl'])

    def test_missing_days_count_as_rest(self):
        series = training_load_series({date(2024, 1, 1): 100.0, date(2024, 1, 3): 100.0})
        self.assertEqual(len(series), 3)
        self.assertEqual(series['tss'].tolist(), [100.0, 0.0, 100.0])

        consecutive = training_load_series([100.0, 0.0, 100.0])
        np.testing.assert_allclose(series['ctl'].to_numpy(), consecutive['ctl'].to_numpy())

    def test_activities_on_the_same_day_are_summed(self):
        import pandas as pd
        history = pd.Series([60.0, 40.0], index=[pd.Timestamp('2024-02-01 07:00'),
                                                 pd.Timestamp('2024-02-01 18:00')])
        series = training_load_series(history)
        self.assertEqual(series['tss'].tolist(), [100.0])
        # Caller's data is not modified
        self.assertEqual(history.index[0], pd.Timestamp('2024-02-01 07:00'))

    def test_history_extended_to_end_date(self):
        series = training_load_series({date(2024, 1, 1): 100.0}, end=date(2024, 1, 10))
        self.assertEqual(len(series), 10)
        self.assertEqual(series['tss'].iloc[-1], 0.0)

    def test_empty_history_keeps_initial_values(self):
        load = training_load([], initial_ctl=50.0, initial_atl=40.0)
        self.assertEqual((load.ctl, load.atl, load.tsb), (50.0, 40.0, 10.0))

    def test_rest_day_decays_from_initial_values(self):
        load = training_load([0.0], initial_ctl=50.0, initial_atl=70.0)
        self.assertAlmostEqual(load.ctl, 50.0 * (1 - training_metrics.CTL_ALPHA))
        self.assertAlmostEqual(load.atl, 70.0 * (1 - training_metrics.ATL_ALPHA))

    def test_projection_and_recommendation(self):
        self.assertAlmostEqual(project_ctl(50.0, [50.0] * 10), 50.0)
        self.assertEqual(recommended_tss(60.0, 50.0), 60.0)
        self.assertGreater(recommended_tss(50.0, 80.0), 50.0)

    def test_form_labels(self):
        self.assertEqual(form_status(30), 'fresh')
        self.assertEqual(form_status(10), 'optimal')
        self.assertEqual(form_status(0), 'neutral')
        self.assertEqual(form_status(-20), 'tired')
        self.assertEqual(form_status(-40), 'overreaching')

        labels = analyze_training_load(training_load([100.0] * 600))
        self.assertEqual(labels['fitness_level'], 'very_high')
        self.assertEqual(labels['form'], 'good')


class TestElevationAndZones(unittest.TestCase):
    def test_vam(self):
        self.assertAlmostEqual(vam(500, 3600), 500.0)
        self.assertIsNone(vam(500, 0))

    def test_grade_analysis_on_constant_climb(self):
        distance = np.arange(0, 501, 1, dtype=float)
        altitude = distance * 0.04
        grade = grade_analysis(distance, altitude)
        self.assertAlmostEqual(grade['avg_grade'], 4.0, places=6)
        self.assertAlmostEqual(grade['distribution']['climb'], 100.0)
        self.assertEqual(grade['distribution']['descent_steep'], 0.0)

    def test_grade_analysis_without_altitude(self):
        self.assertIsNone(grade_analysis([0.0, 10.0, 20.0], [np.nan, np.nan, np.nan]))

    def test_zone_distribution_in_seconds(self):
        seconds = zone_distribution([100.0] * 10 + [200.0] * 5, 200, ZoneCalculator.POWER_ZONES)
        self.assertEqual(seconds['Z1'], 10.0)
        self.assertEqual(seconds['Z4'], 5.0)
        self.assertEqual(sum(seconds.values()), 15.0)

    def test_zone_distribution_requires_threshold(self):
        self.assertIsNone(zone_distribution([150.0], None, ZoneCalculator.HEART_RATE_ZONES))

    def test_zone_boundaries(self):
        """Boundaries belong to the upper zone."""
        self.assertEqual(training_metrics.power_zone_index(109.99, 200), 0)
        self.assertEqual(training_metrics.power_zone_index(110.0, 200), 1)
        self.assertEqual(training_metrics.power_zone_index(1000.0, 200), 6)
        self.assertEqual(training_metrics.hr_zone_index(150.0, 150), 4)
        self.assertIsNone(training_metrics.hr_zone_index(150.0, None))


if __name__ == '__main__':
    unittest.main()
