"""Party Ledger: points, milestone popups and peer nominations for party games."""

__version__ = "1.0.0"
