"""QR handoff protocol package."""
