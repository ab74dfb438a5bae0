"""
Database models - import all models here so Alembic can discover them.
"""
from journeyflow.models.lead import Lead
from journeyflow.models.contact import Contact
from journeyflow.models.consent import ConsentRecord
from journeyflow.models.journey import LeadJourney
from journeyflow.models.event_log import EventLog

__all__ = [
    "Lead",
    "Contact",
    "ConsentRecord",
    "LeadJourney",
    "EventLog",
]
