"""Knowledge source ingestion: scheduled sync jobs and weighted search indexing."""

__version__ = "0.1.0"
