"""Risk-adaptive wallet transfers and recurring remittance scheduling."""

__version__ = "0.1.0"
