"""ExperienceHub - share and browse internship and placement experiences."""

__version__ = "0.1.0"
