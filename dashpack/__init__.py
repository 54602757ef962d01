"""Dashboard feature pack: table grouping and filtering over relational storage."""

__version__ = "0.4.0"
