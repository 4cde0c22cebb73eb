"""
Document numbers: {COMPANY}-{DEPT}-{SECT}-{YYYY}-{MM}-{NNNN}.

The sequence comes from a counter row per (department, section, month),
incremented with a single atomic UPDATE in its own short transaction so
concurrent creates never read the same value. Numbers are unique but not
gap-free: a create that fails after allocation burns its number.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.doccontrol.models import Department, Section
from app.doccontrol.modules.document_control.models import DocumentNumberCounter
from app.doccontrol.utils import utcnow

logger = logging.getLogger(__name__)

SEQUENCE_WIDTH = 4


def period_key(now: datetime) -> str:
    return f"{now.year:04d}-{now.month:02d}"


def format_document_number(company_code: str, dept_code: str, sect_code: str, now: datetime, seq: int) -> str:
    return f"{company_code}-{dept_code}-{sect_code}-{now.year:04d}-{now.month:02d}-{seq:0{SEQUENCE_WIDTH}d}"


def fallback_document_number(now: datetime | None = None) -> str:
    now = now or utcnow()
    return f"AUTO-{now.strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(4).upper()}"


def _bump(s: Session, department_id: int, section_id: int, period: str) -> int:
    return s.execute(
        update(DocumentNumberCounter)
        .where(
            DocumentNumberCounter.department_id == department_id,
            DocumentNumberCounter.section_id == section_id,
            DocumentNumberCounter.period == period,
        )
        .values(current_value=DocumentNumberCounter.current_value + 1)
        .execution_options(synchronize_session=False)
    ).rowcount


def allocate_sequence(counter_session: Session, department_id: int, section_id: int, period: str) -> int:
    """
    Next value for the (department, section, period) counter.
    Commits on `counter_session`; the caller owns nothing else in it.
    """
    if _bump(counter_session, department_id, section_id, period) == 0:
        counter_session.add(
            DocumentNumberCounter(department_id=department_id, section_id=section_id, period=period, current_value=1)
        )
        try:
            counter_session.flush()
        except IntegrityError:
            # Someone else created the row first; their row is committed, bump it.
            counter_session.rollback()
            if _bump(counter_session, department_id, section_id, period) == 0:
                raise
    value = counter_session.execute(
        select(DocumentNumberCounter.current_value).where(
            DocumentNumberCounter.department_id == department_id,
            DocumentNumberCounter.section_id == section_id,
            DocumentNumberCounter.period == period,
        )
    ).scalar_one()
    counter_session.commit()
    logger.debug("document number sequence allocated period=%s dept=%s sect=%s value=%s", period, department_id, section_id, value)
    return int(value)


def generate_document_number(
    s: Session,
    department: Department,
    section: Section,
    *,
    company_code: str,
    now: datetime | None = None,
) -> str:
    """
    Allocate a document number. Never raises: on any allocation error the
    synthetic AUTO-... number is returned and the failure is logged.
    """
    now = now or utcnow()
    try:
        with Session(bind=s.get_bind(), expire_on_commit=False) as counter_session:
            try:
                seq = allocate_sequence(counter_session, department.id, section.id, period_key(now))
            except Exception:
                counter_session.rollback()
                raise
        return format_document_number(company_code, department.code, section.code, now, seq)
    except SQLAlchemyError:
        logger.exception(
            "Document number allocation failed for %s/%s; using fallback number",
            department.code,
            section.code,
        )
        return fallback_document_number(now)
