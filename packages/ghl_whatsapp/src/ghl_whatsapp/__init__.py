"""
GoHighLevel <-> WhatsApp connector engine.

Bridges a CRM location to a WhatsApp session: resolves contact identities,
classifies and deduplicates session events, serializes outbound delivery per
tenant and tracks each tenant's connection lifecycle.
"""

__version__ = "1.0.0"
