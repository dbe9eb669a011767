"""blockflow — batch generation engine for block graphs."""

__version__ = "1.0.0"
