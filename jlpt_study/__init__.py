"""
JLPT Study

A JLPT N1 study backend with SM-2 spaced repetition, progress tracking,
personalized practice tests and AI-generated practice content.
"""

from . import errors
from . import scheduler
from . import db
from . import exercises
from . import structured

__version__ = "0.1.0"
__all__ = ["errors", "scheduler", "db", "exercises", "structured"]
