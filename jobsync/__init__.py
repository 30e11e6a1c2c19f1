"""
JobSync: turns job-application emails into structured records.

Pipeline: Fetch -> Digest Filter -> Fast Classifier -> (Deep Classifier)
-> Confidence Router -> Job records / Review queue.
"""

from .__version__ import __version__

__all__ = ["__version__"]
