"""
Shared infrastructure: settings, logging, database, Redis, errors and encryption.
"""
