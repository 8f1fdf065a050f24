"""
Ticket Triage Pipeline.

This package classifies incoming support tickets, retrieves relevant
knowledge-base articles, drafts a reply and decides between auto-closing
the ticket and handing it to a human agent.
"""

__version__ = "1.0.0"
__author__ = "Automation Engineer"
