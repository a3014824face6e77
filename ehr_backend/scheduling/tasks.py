"""
Scheduled tasks

Background jobs meant to run periodically (cron, a worker's beat schedule):
- mark_no_shows: moves unattended, already finished appointments to NO_SHOW
- retract_stale_reminders: retracts reminders whose appointment left the active set
"""

import logging

from sqlalchemy.orm import sessionmaker

from ehr_backend.core.errors import SchedulingError
from ehr_backend.models.appointment import Appointment
from ehr_backend.models.reminder import ReminderJob
from ehr_backend.scheduling.lifecycle import ACTIVE_STATUSES
from ehr_backend.scheduling.orchestrator import AppointmentOrchestrator
from ehr_backend.scheduling.reminders import ReminderScheduler

logger = logging.getLogger(__name__)


def mark_no_shows(orchestrator: AppointmentOrchestrator) -> int:
    """Returns how many appointments were marked as no-show."""
    marked = 0

    for appointment_id in orchestrator.overdue_appointment_ids():
        try:
            orchestrator.mark_no_show(appointment_id)
        except SchedulingError as exc:
            # Checked in or cancelled between the query and the transition.
            logger.info('Skipping no-show for appointment %s: %s', appointment_id, exc.detail)
            continue

        marked += 1

    if marked:
        logger.info('mark_no_shows: %s appointment(s) marked as no-show', marked)

    return marked


def retract_stale_reminders(session_factory: sessionmaker, reminders: ReminderScheduler) -> int:
    db = session_factory()
    try:
        stale_ids = [
            appointment_id
            for (appointment_id,) in db.query(ReminderJob.appointment_id).join(
                Appointment,
                Appointment.id == ReminderJob.appointment_id,
            ).filter(
                ReminderJob.sent.is_(False),
                ReminderJob.gateway_job_id.is_not(None),
                Appointment.status.not_in(sorted(ACTIVE_STATUSES)),
            ).distinct().all()
        ]
    finally:
        db.close()

    retracted = 0
    for appointment_id in stale_ids:
        retracted += reminders.retract(appointment_id)

    if retracted:
        logger.info('retract_stale_reminders: %s reminder(s) retracted', retracted)

    return retracted
