"""Standardized Hypothesis settings profiles for property tests.

Tiers:
- STANDARD_SETTINGS: 100 examples - Regular property tests
- QUICK_SETTINGS: 20 examples - Fast validation tests
"""

from hypothesis import settings

STANDARD_SETTINGS = settings(max_examples=100)

QUICK_SETTINGS = settings(max_examples=20)
