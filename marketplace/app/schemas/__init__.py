"""Request and response schemas for the marketplace API."""
