"""asc-crash-fetcher: TestFlight crash and feedback triage database."""

__version__ = "0.3.0"
