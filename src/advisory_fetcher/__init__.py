"""Advisory remediation collector: fetch, extract and merge advisory metadata."""

__version__ = "0.3.0"
