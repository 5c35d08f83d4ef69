"""habitsync - replica synchronization for a personal record list"""

__version__ = "1.0.0"
