"""
Dual Gravity - Music Discovery Scoring Engine

Builds candidate pools around the currently playing track, scores every
candidate against two players' target artists and selects a balanced
option set per turn while tracking each player's gravity.
"""

__version__ = "0.1.0"
__author__ = "Dual Gravity Team"
