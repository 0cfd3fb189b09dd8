"""
WhatsApp Business inbox: messaging, contacts, templates, team, billing and analytics.
"""
