import re
from datetime import datetime, timezone

from backoffice.database import atomic
from backoffice.services.sequence_service import BULK_TRANSFER_PREFIX, TRANSFER_PREFIX, SequenceGenerator

NUMBER = re.compile(r"^IT-(\d{8})-(\d{4})-(\d{3})$")


def test_number_format(db, seed):
    now = datetime(2024, 3, 9, 12, 0, 1, 234000, tzinfo=timezone.utc)
    with atomic(db):
        number = SequenceGenerator(db).next(seed.tenant, TRANSFER_PREFIX, now=now)

    match = NUMBER.match(number)
    assert match
    assert match.group(1) == "20240309"
    assert match.group(2) == str(int(now.timestamp() * 1000))[-4:]
    assert match.group(3) == "001"


def test_counter_increments_per_tenant_prefix_and_day(db, seed):
    gen = SequenceGenerator(db)
    day1 = datetime(2024, 3, 9, tzinfo=timezone.utc)
    day2 = datetime(2024, 3, 10, tzinfo=timezone.utc)
    with atomic(db):
        first = gen.next(seed.tenant, TRANSFER_PREFIX, now=day1)
        second = gen.next(seed.tenant, TRANSFER_PREFIX, now=day1)
        bulk = gen.next(seed.tenant, BULK_TRANSFER_PREFIX, now=day1)
        other_tenant = gen.next("tenant-b", TRANSFER_PREFIX, now=day1)
        next_day = gen.next(seed.tenant, TRANSFER_PREFIX, now=day2)

    assert first.endswith("-001")
    assert second.endswith("-002")
    assert bulk.startswith("BT-20240309-") and bulk.endswith("-001")
    assert other_tenant.endswith("-001")
    assert next_day.startswith("IT-20240310-") and next_day.endswith("-001")


def test_numbers_are_unique_across_transactions(session_factory, seed):
    seen = set()
    for _ in range(5):
        session = session_factory()
        try:
            with atomic(session):
                seen.add(SequenceGenerator(session).next(seed.tenant, TRANSFER_PREFIX))
        finally:
            session.close()
    assert len(seen) == 5
