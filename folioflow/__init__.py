"""
folioflow - chat-driven expense folio approval workflow.

Inbound WhatsApp messages create and move folios (expense requests) and
projects through role-gated approval stages; every change is audited and
fanned out as notifications to the interested roles.
"""

__version__ = "1.0.0"
