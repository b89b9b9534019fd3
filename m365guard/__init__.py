"""m365guard: rule-driven Microsoft 365 phishing detection."""

__version__ = "1.0.0"
