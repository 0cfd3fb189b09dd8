"""HTTP API for the WhatsApp inbox."""
