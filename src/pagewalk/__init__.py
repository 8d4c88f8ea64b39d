"""Rate-limit aware walker for cursor-paginated REST APIs."""

__version__ = "0.1.0"
