"""
JobSync - Version and metadata
"""

__version__ = "0.4.2"
__author__ = "JobSync Contributors"
__license__ = "MIT"
__description__ = (
    "Job-application email sync: fetch, filter, classify and review"
)
