"""autoshard — split test suites into shards and coordinate their execution."""

__version__ = "0.1.0"
