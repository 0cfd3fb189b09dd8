from inbox.providers.stub.client import StubWhatsAppProvider

__all__ = ["StubWhatsAppProvider"]
