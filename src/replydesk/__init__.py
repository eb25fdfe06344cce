"""replydesk - template-driven AI replies for customer-support mailboxes."""

__version__ = "0.1.0"
