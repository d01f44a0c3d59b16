"""monodeck - run and manage the sub-projects of a monorepo."""

__version__ = "0.3.0"
