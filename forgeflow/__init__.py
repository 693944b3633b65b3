"""ForgeFlow: visual CI/CD workflows that build, test and release local repositories."""

__version__ = "1.0.0"
