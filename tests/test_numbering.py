import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from threading import Barrier

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.doccontrol.models import Department, Section
from app.doccontrol.modules.document_control import numbering
from app.doccontrol.modules.document_control.models import DocumentNumberCounter
from app.doccontrol.modules.document_control.numbering import (
    fallback_document_number,
    format_document_number,
    generate_document_number,
)

NUMBER_RE = re.compile(r"^AKM-IT-DEV-\d{4}-\d{2}-\d{4}$")


def test_format():
    assert format_document_number("AKM", "IT", "DEV", datetime(2025, 8, 3), 1) == "AKM-IT-DEV-2025-08-0001"
    assert format_document_number("AKM", "HR", "REC", datetime(2025, 12, 1), 12345) == "AKM-HR-REC-2025-12-12345"


def test_numbers_increment_per_department_section_and_month(s, org):
    it, dev, ops = org["IT"], org["IT/DEV"], org["IT/OPS"]
    aug = datetime(2025, 8, 15)
    sep = datetime(2025, 9, 1)

    assert generate_document_number(s, it, dev, company_code="AKM", now=aug) == "AKM-IT-DEV-2025-08-0001"
    assert generate_document_number(s, it, dev, company_code="AKM", now=aug) == "AKM-IT-DEV-2025-08-0002"
    assert generate_document_number(s, it, ops, company_code="AKM", now=aug) == "AKM-IT-OPS-2025-08-0001"
    assert generate_document_number(s, it, dev, company_code="AKM", now=sep) == "AKM-IT-DEV-2025-09-0001"

    counters = s.execute(select(DocumentNumberCounter).order_by(DocumentNumberCounter.id)).scalars().all()
    assert [(c.period, c.current_value) for c in counters] == [("2025-08", 2), ("2025-08", 1), ("2025-09", 1)]


def test_created_documents_get_sequential_numbers(make_document):
    first = make_document()
    second = make_document(title="Second")
    assert NUMBER_RE.match(first.document_number)
    assert int(second.document_number[-4:]) == int(first.document_number[-4:]) + 1


def test_parallel_allocation_is_unique(app):
    sm = app.extensions["sqlalchemy_sessionmaker"]
    workers = 8
    barrier = Barrier(workers)
    now = datetime(2025, 8, 1)

    with sm() as s:
        dept_id = s.execute(select(Department.id).where(Department.code == "IT")).scalar_one()
        sect_id = s.execute(select(Section.id).where(Section.code == "DEV")).scalar_one()

    def allocate(_):
        with sm() as ts:
            dept = ts.get(Department, dept_id)
            sect = ts.get(Section, sect_id)
            barrier.wait(timeout=10)
            return generate_document_number(ts, dept, sect, company_code="AKM", now=now)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        numbers = list(pool.map(allocate, range(workers)))

    assert len(set(numbers)) == workers
    assert sorted(numbers) == [f"AKM-IT-DEV-2025-08-{i:04d}" for i in range(1, workers + 1)]


def test_fallback_number_shape():
    n = fallback_document_number(datetime(2025, 8, 3, 14, 5, 9))
    assert re.match(r"^AUTO-20250803140509-[0-9A-F]{8}$", n)
    assert fallback_document_number() != fallback_document_number()


def test_allocation_error_falls_back(s, org, monkeypatch, caplog):
    def boom(*args, **kwargs):
        raise OperationalError("UPDATE document_number_counters", {}, Exception("database is locked"))

    monkeypatch.setattr(numbering, "allocate_sequence", boom)
    n = generate_document_number(s, org["IT"], org["IT/DEV"], company_code="AKM")
    assert n.startswith("AUTO-")
    assert "fallback" in caplog.text
