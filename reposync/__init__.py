"""reposync — propagate changes between sibling git working copies, reversibly."""

__version__ = "0.1.0"
