"""
Matching Rules Module
"""

from .ticket_rules import TicketMatchingRules, ticket_rules

__all__ = ["TicketMatchingRules", "ticket_rules"]
