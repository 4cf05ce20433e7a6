"""Points ledger, progression and achievement engine for the family task tracker."""

__version__ = "0.1.0"
