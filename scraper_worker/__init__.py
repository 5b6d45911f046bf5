"""Content-acquisition worker: discovers segments of works, ingests their assets into object storage and records them in a relational ledger."""

__version__ = "0.1.0"
