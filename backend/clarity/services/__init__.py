"""Domain services: stream ledger, card lifecycle, job queue and file processing."""

from clarity.services.card_factory import card_factory
from clarity.services.ledger import position_ledger
from clarity.services.link_resolver import link_resolver
from clarity.services.storage_usage import storage_accountant

__all__ = ["card_factory", "position_ledger", "link_resolver", "storage_accountant"]
