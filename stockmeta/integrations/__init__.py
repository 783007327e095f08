"""Remote provider integrations (Google Gemini REST API)."""
