"""dpiwarden: supervisor and updater for a DPI-circumvention engine."""

__version__ = "0.1.0"
