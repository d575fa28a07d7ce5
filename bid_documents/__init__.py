"""
BidDocGen — bid document generation for tender participants.

Finds the form a tender package expects (e.g. "Анкета участника") among
the uploaded files, and fills it with the participant's company data via
an LLM completion gateway. Falls back to a standard form when the package
doesn't include one.
"""

__version__ = "1.0.0"
__author__ = "BidDocGen"
