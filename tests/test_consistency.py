"""
Vigil Liveness Engine: Consistency Checker Tests
================================================
Each anti-spoofing rule in isolation, and max-not-sum combination.
"""

import unittest

import numpy as np

from conftest import make_observation
from vigil_consistency import ConsistencyChecker, landmark_distance
from vigil_types import ObservationHistory


def _history_with(*observations, capacity=10):
    history = ObservationHistory(capacity=capacity)
    for obs in observations:
        history.push(obs)
    return history


class TestConsistencyChecker(unittest.TestCase):

    def setUp(self):
        self.checker = ConsistencyChecker()

    def test_clean_frame_scores_zero(self):
        prev = make_observation(t=0.0)
        cur = make_observation(t=0.1, dx=2.0)
        history = _history_with(prev, cur)
        history.previous_landmarks = prev.landmarks

        report = self.checker.check(cur, history)
        self.assertEqual(report.score, 0.0)
        self.assertIsNone(report.rule)
        self.assertFalse(report.triggered)
        self.assertAlmostEqual(report.landmark_distance, 2.0)

    def test_landmark_jump_scores_0_8(self):
        prev = make_observation(t=0.0)
        cur = make_observation(t=0.1, dx=60.0)
        history = _history_with(prev, cur)
        history.previous_landmarks = prev.landmarks

        report = self.checker.check(cur, history)
        self.assertEqual(report.score, 0.8)
        self.assertEqual(report.rule, "landmark_jump")
        self.assertAlmostEqual(report.landmark_distance, 60.0)

    def test_no_previous_landmarks_skips_jump_rule(self):
        """After a face loss the first landmarks are not compared."""
        cur = make_observation(t=0.1, dx=200.0)
        history = _history_with(cur)
        report = self.checker.check(cur, history)
        self.assertEqual(report.score, 0.0)

    def test_expression_jump_rule(self):
        """Default threshold 3.5 exceeds any L1 distance of two distributions;
        a lowered threshold exposes the rule."""
        a = make_observation(t=0.0, happy=0.0)
        b = make_observation(t=0.1, happy=0.0, neutral=0.0, surprised=1.0)
        history = _history_with(a, b)

        self.assertEqual(self.checker.check(b, history).score, 0.0)

        sensitive = ConsistencyChecker(expression_jump=1.5)
        report = sensitive.check(b, history)
        self.assertEqual(report.score, 0.9)
        self.assertEqual(report.rule, "expression_jump")
        self.assertAlmostEqual(report.expression_jump, 2.0)

    def test_illumination_freeze_needs_six_samples(self):
        frames = [make_observation(t=0.1 * i, illumination=0.5) for i in range(5)]
        history = _history_with(*frames)
        self.assertEqual(self.checker.check(frames[-1], history).score, 0.0)

        sixth = make_observation(t=0.5, illumination=0.5)
        history.push(sixth)
        report = self.checker.check(sixth, history)
        self.assertEqual(report.score, 0.7)
        self.assertEqual(report.rule, "illumination_freeze")
        self.assertAlmostEqual(report.illumination_variance, 0.0)

    def test_varying_illumination_is_clean(self):
        levels = [0.40, 0.45, 0.52, 0.47, 0.41, 0.50]
        frames = [make_observation(t=0.1 * i, illumination=v) for i, v in enumerate(levels)]
        history = _history_with(*frames)
        report = self.checker.check(frames[-1], history)
        self.assertEqual(report.score, 0.0)
        self.assertGreater(report.illumination_variance, 1e-4)

    def test_rules_combine_by_max_not_sum(self):
        """Landmark jump (0.8) and illumination freeze (0.7) together -> 0.8."""
        frames = [make_observation(t=0.1 * i, illumination=0.5) for i in range(6)]
        jumped = make_observation(t=0.6, dx=80.0, illumination=0.5)
        history = _history_with(*frames, jumped)
        history.previous_landmarks = frames[-1].landmarks

        report = self.checker.check(jumped, history)
        self.assertEqual(report.score, 0.8)
        self.assertEqual(report.rule, "landmark_jump")
        self.assertIsNotNone(report.illumination_variance)

    def test_check_does_not_touch_history(self):
        prev = make_observation(t=0.0)
        cur = make_observation(t=0.1, dx=60.0)
        history = _history_with(prev, cur)
        history.previous_landmarks = prev.landmarks

        self.checker.check(cur, history)
        self.assertIs(history.previous_landmarks, prev.landmarks)
        self.assertEqual(len(history.expressions), 2)


def test_landmark_distance_is_mean_displacement():
    a = make_observation(dx=0.0).landmarks
    b = make_observation(dx=30.0).landmarks
    assert np.isclose(landmark_distance(a, b), 30.0)
    assert landmark_distance(a, a) == 0.0


def test_report_to_dict_is_json_friendly():
    report = ConsistencyChecker().check(make_observation(), _history_with(make_observation()))
    data = report.to_dict()
    assert set(data) == {"score", "rule", "landmark_distance", "expression_jump", "illumination_variance"}
