"""ICS calendar generation."""
