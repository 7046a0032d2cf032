"""
Test package marker.

Tests import helpers as `tests.sample_handlers`, so handlers pickled by
reference resolve to a real package on both sides of a round trip.
"""
