"""Pull one unit of work from a backend, run a program on it, and report back."""

__version__ = "0.1.0"
