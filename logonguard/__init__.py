"""LogonGuard: Microsoft 365 login page phishing detection."""

__version__ = "1.0.0"
