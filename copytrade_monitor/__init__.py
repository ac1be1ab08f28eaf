"""Live monitor for copy-trading positions scraped from the exchange UI."""

__version__ = "0.1.0"
