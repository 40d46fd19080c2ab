import unittest
import numpy as np
import numpy.testing as npt
from tfceperm.connectivity import AdjacencyConnector, GridConnector
from tfceperm.errors import ConfigurationError
from tfceperm.tfce import GraphIntegrator, SpatialIntegrator, calculate_auto_dh


class TestSpatialIntegrator(unittest.TestCase):
    def setUp(self):
        self.line = GridConnector(np.ones(5))

    def test_all_zero_statistics(self):
        """All-zero input gives an all-zero map and a zero maximum."""
        integrator = SpatialIntegrator(self.line, dh=0.1, E=0.5, H=2.0)
        tfce_stats, max_tfce = integrator.integrate(0.0, np.zeros(5))
        npt.assert_array_equal(tfce_stats, np.zeros(5))
        self.assertEqual(max_tfce, 0.0)

    def test_single_cluster_single_step(self):
        """Cluster of 3 above threshold once: 3**1 * 1**2 = 3 for each member."""
        integrator = SpatialIntegrator(self.line, dh=1.0, E=1.0, H=2.0)
        stats = np.array([1.5, 1.5, 1.5, 0.0, 0.0])
        tfce_stats, max_tfce = integrator.integrate(stats.max(), stats)
        npt.assert_allclose(tfce_stats, [3.0, 3.0, 3.0, 0.0, 0.0])
        self.assertAlmostEqual(max_tfce, 3.0)

    def test_max_stat_not_above_dh(self):
        """The sweep starts at dh, so max_stat <= dh never enters the loop."""
        integrator = SpatialIntegrator(self.line, dh=1.0, E=1.0, H=1.0)
        stats = np.array([1.0, 1.0, 0.5, 0.0, 1.0])
        tfce_stats, max_tfce = integrator.integrate(1.0, stats)
        npt.assert_array_equal(tfce_stats, np.zeros(5))
        self.assertEqual(max_tfce, 0.0)

    def test_separate_clusters_accumulate_over_thresholds(self):
        integrator = SpatialIntegrator(self.line, dh=1.0, E=1.0, H=1.0)
        stats = np.array([2.5, 2.5, 0.0, 2.5, 0.0])
        tfce_stats, max_tfce = integrator.integrate(2.5, stats)
        # t=1 and t=2: sizes 2, 2, -, 1
        npt.assert_allclose(tfce_stats, [6.0, 6.0, 0.0, 3.0, 0.0])
        self.assertAlmostEqual(max_tfce, 6.0)

    def test_negative_statistics_contribute_nothing(self):
        integrator = SpatialIntegrator(self.line, dh=0.5, E=0.5, H=2.0)
        stats = np.array([-3.0, -3.0, 2.0, -1.0, 0.0])
        tfce_stats, _ = integrator.integrate(2.0, stats)
        self.assertTrue(np.all(tfce_stats[[0, 1, 3, 4]] == 0))
        self.assertGreater(tfce_stats[2], 0)

    def test_repeated_calls_do_not_leak(self):
        integrator = SpatialIntegrator(self.line, dh=0.2, E=0.5, H=2.0)
        stats = np.array([1.0, 2.0, 3.0, 0.0, 1.5])
        first, first_max = integrator.integrate(stats.max(), stats)
        second, second_max = integrator.integrate(stats.max(), stats)
        npt.assert_array_equal(first, second)
        self.assertEqual(first_max, second_max)

    def test_adjacency_connector_matches_grid(self):
        """A chain adjacency reproduces the 1D grid result."""
        n = 5
        chain = np.zeros((n, n))
        for i in range(n - 1):
            chain[i, i + 1] = 1
        stats = np.array([0.3, 2.2, 1.7, 0.1, 2.9])
        grid = SpatialIntegrator(self.line, dh=0.1, E=0.5, H=2.0)
        graph = SpatialIntegrator(AdjacencyConnector(chain), dh=0.1, E=0.5, H=2.0)
        grid_map, grid_max = grid.integrate(stats.max(), stats)
        graph_map, graph_max = graph.integrate(stats.max(), stats)
        npt.assert_allclose(grid_map, graph_map)
        self.assertAlmostEqual(grid_max, graph_max)

    def test_invalid_parameters(self):
        with self.assertRaises(ConfigurationError):
            SpatialIntegrator(self.line, dh=0.0)
        with self.assertRaises(ConfigurationError):
            SpatialIntegrator(self.line, dh=-0.1)
        with self.assertRaises(ConfigurationError):
            SpatialIntegrator(self.line, dh=0.1, E=np.nan)


class TestGraphIntegrator(unittest.TestCase):
    def test_symmetric_pair(self):
        """Two mutually connected elements at 5 with dh=E=H=1: 1+2+3+4 = 10."""
        integrator = GraphIntegrator([{1: 1.0}, {0: 1.0}], dh=1.0, E=1.0, H=1.0)
        stats = np.array([5.0, 5.0])
        tfce_stats, max_tfce = integrator.integrate(5.0, stats)
        npt.assert_allclose(tfce_stats, [10.0, 10.0])
        self.assertAlmostEqual(max_tfce, 10.0)

    def test_extent_uses_neighbour_statistic(self):
        """Element 0 gains from its neighbour's value even though its own is zero."""
        integrator = GraphIntegrator([{1: 2.0}, {}], dh=1.0, E=1.0, H=1.0)
        stats = np.array([0.0, 3.0])
        tfce_stats, max_tfce = integrator.integrate(3.0, stats)
        # t=1, 2: extent of element 0 is 2.0, element 1 has no neighbours
        npt.assert_allclose(tfce_stats, [6.0, 0.0])
        self.assertAlmostEqual(max_tfce, 6.0)

    def test_all_zero_statistics(self):
        integrator = GraphIntegrator(np.ones((4, 4)), dh=0.1)
        tfce_stats, max_tfce = integrator.integrate(0.0, np.zeros(4))
        npt.assert_array_equal(tfce_stats, np.zeros(4))
        self.assertEqual(max_tfce, 0.0)

    def test_self_connections_are_ignored(self):
        with self.assertWarns(UserWarning):
            integrator = GraphIntegrator([{0: 5.0, 1: 1.0}, {0: 1.0}], dh=1.0, E=1.0, H=1.0)
        tfce_stats, _ = integrator.integrate(5.0, np.array([5.0, 5.0]))
        npt.assert_allclose(tfce_stats, [10.0, 10.0])

    def test_dangling_reference(self):
        with self.assertRaises(ConfigurationError):
            GraphIntegrator([{1: 1.0}, {2: 1.0}])


class TestCalculateAutoDh(unittest.TestCase):
    def test_two_tailed(self):
        self.assertAlmostEqual(calculate_auto_dh([1.0, -4.0, 2.0]), 0.04)

    def test_one_tailed(self):
        self.assertAlmostEqual(calculate_auto_dh([1.0, -4.0, 2.0], two_tailed=False), 0.02)

    def test_degenerate_input(self):
        self.assertEqual(calculate_auto_dh([]), 0.0)
        self.assertEqual(calculate_auto_dh([np.nan, np.nan]), 0.0)
        self.assertEqual(calculate_auto_dh([-1.0, -2.0], two_tailed=False), 0.0)
        self.assertEqual(calculate_auto_dh(np.zeros(3)), 0.0)


if __name__ == '__main__':
    unittest.main()
