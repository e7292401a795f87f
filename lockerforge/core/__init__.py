"""Models, canonical encoding, diagnostics and the exception hierarchy."""
