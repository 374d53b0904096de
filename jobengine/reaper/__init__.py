"""
Reaper module.
Contains the stale job reaper for recovering jobs abandoned by crashed workers.
"""

from jobengine.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
