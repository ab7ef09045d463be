import logging
from datetime import datetime, timezone
from typing import Any, Generator, Iterable, Optional, Tuple

from sqlalchemy import MetaData, Table, create_engine, func, inspect, insert, or_, select, text, update
from sqlalchemy.exc import NoSuchTableError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from tillsms.config import settings
from tillsms.errors import SchemaMismatch

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

# Store payload ceiling for one insert / one IN (...) list
BATCH_SIZE = 500

OWN_TABLES = ("sms_campaigns", "sms_messages")


def utc_now_iso() -> str:
    """
    Current UTC time as a fixed-width ISO-8601 string.

    Fixed width keeps lexicographic order equal to chronological order, which
    the "most recent" comparisons rely on.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def init_db() -> None:
    """
    Initialize the database by creating the tables this service owns.
    Called during application startup.
    """
    logger.debug("Initializing database")
    try:
        # Import models to register them with Base.metadata
        from tillsms.models import SmsCampaign, SmsMessage  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and our tables exist.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            inspector = inspect(db.get_bind())
            missing = [name for name in OWN_TABLES if not inspector.has_table(name)]
            if missing:
                logger.error(f"Database schema not applied: missing tables {missing}")
                return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# External (reflected) tables
# =============================================================================

def has_table(db: Session, name: str) -> bool:
    return inspect(db.get_bind()).has_table(name)


def reflect_table(db: Session, name: str) -> Table:
    """
    Reflect an upstream table we do not own.

    Done per request so schema changes upstream are picked up without a restart.
    """
    try:
        return Table(name, MetaData(), autoload_with=db.get_bind())
    except NoSuchTableError:
        raise SchemaMismatch(f"Table '{name}' not found")


def sample_row(db: Session, table: Table) -> Optional[dict[str, Any]]:
    """Return one row of the table as a dict, or None when it is empty."""
    row = db.execute(select(table).limit(1)).mappings().first()
    return dict(row) if row is not None else None


# =============================================================================
# Campaign / Message Repository Functions
# =============================================================================

def insert_campaign(db: Session, **fields):
    """Add a campaign row and flush so its id is available. Caller commits."""
    from tillsms.models import SmsCampaign

    campaign = SmsCampaign(**fields)
    db.add(campaign)
    db.flush()
    logger.info(f"Campaign inserted: id={campaign.id}, target={campaign.target_count}")
    return campaign


def insert_messages(db: Session, rows: list[dict], batch_size: int = BATCH_SIZE) -> int:
    """Insert message rows in batches of at most batch_size. Caller commits."""
    from tillsms.models import SmsMessage

    for start in range(0, len(rows), batch_size):
        chunk = rows[start:start + batch_size]
        db.execute(insert(SmsMessage), chunk)
        logger.debug(f"Inserted message batch: offset={start}, size={len(chunk)}")
    return len(rows)


def get_campaign(db: Session, campaign_id: str):
    from tillsms.models import SmsCampaign

    return db.get(SmsCampaign, campaign_id)


def list_campaigns(db: Session, limit: int = 100) -> list:
    from tillsms.models import SmsCampaign

    stmt = select(SmsCampaign).order_by(SmsCampaign.created_at.desc()).limit(limit)
    return list(db.execute(stmt).scalars().all())


def count_messages_by_status(db: Session, campaign_id: str) -> dict[str, int]:
    """Count a campaign's messages per status."""
    from tillsms.models import SmsMessage

    stmt = (
        select(SmsMessage.status, func.count(SmsMessage.id))
        .where(SmsMessage.campaign_id == campaign_id)
        .group_by(SmsMessage.status)
    )
    return {status: count for status, count in db.execute(stmt).all()}


def update_campaign(db: Session, campaign_id: str, **values) -> int:
    from tillsms.models import SmsCampaign

    result = db.execute(
        update(SmsCampaign)
        .where(SmsCampaign.id == campaign_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def mark_campaign_sending(db: Session, campaign_id: str) -> int:
    """Set status 'sending' unless a dispatch holds the campaign; that dispatch sets the final status."""
    from tillsms.models import SmsCampaign

    result = db.execute(
        update(SmsCampaign)
        .where(SmsCampaign.id == campaign_id, SmsCampaign.status != "dispatching")
        .values(status="sending")
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def claim_campaign(db: Session, campaign_id: str, expected_status: str, now: str, stale_before: str) -> bool:
    """
    Atomically move a campaign to 'dispatching'.

    Succeeds only if the status is still the one the caller read. A campaign
    already 'dispatching' can only be taken over once its lock is older than
    stale_before.
    """
    from tillsms.models import SmsCampaign

    stmt = update(SmsCampaign).where(
        SmsCampaign.id == campaign_id,
        SmsCampaign.status == expected_status,
    )
    if expected_status == "dispatching":
        stmt = stmt.where(
            or_(SmsCampaign.dispatch_locked_at.is_(None), SmsCampaign.dispatch_locked_at < stale_before)
        )
    result = db.execute(
        stmt.values(status="dispatching", dispatch_locked_at=now).execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def select_queued_messages(db: Session, campaign_id: str, limit: int) -> list:
    """Queued messages of a campaign, oldest first."""
    from tillsms.models import SmsMessage

    stmt = (
        select(SmsMessage)
        .where(SmsMessage.campaign_id == campaign_id, SmsMessage.status == "queued")
        .order_by(SmsMessage.created_at.asc(), SmsMessage.id.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def select_messages_to_check(db: Session, campaign_id: str, limit: int) -> list:
    """Sent messages with a provider id, never-checked first then least recently checked."""
    from tillsms.models import SmsMessage

    stmt = (
        select(SmsMessage)
        .where(
            SmsMessage.campaign_id == campaign_id,
            SmsMessage.status == "sent",
            SmsMessage.flux_message_id.is_not(None),
        )
        .order_by(SmsMessage.last_checked_at.asc().nulls_first(), SmsMessage.id.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def requeue_failed_messages(db: Session, campaign_id: str) -> int:
    """Move every failed message of a campaign back to queued. Caller commits."""
    from tillsms.models import SmsMessage

    result = db.execute(
        update(SmsMessage)
        .where(SmsMessage.campaign_id == campaign_id, SmsMessage.status == "failed")
        .values(
            status="queued",
            flux_message_id=None,
            send_response=None,
            delivery_status_text=None,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def list_messages(
    db: Session,
    limit: int = 50,
    offset: int = 0,
    campaign_id: Optional[str] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
) -> Tuple[list, int]:
    """
    Retrieve messages newest first with pagination and filtering.

    Returns:
        Tuple of (messages list, total count matching filters)
    """
    from tillsms.models import SmsMessage

    query = select(SmsMessage)
    if campaign_id:
        query = query.where(SmsMessage.campaign_id == campaign_id)
    if status:
        query = query.where(SmsMessage.status == status)
    if search:
        term = search.replace("%", "")
        query = query.where(
            or_(
                SmsMessage.phone.ilike(f"%{term}%"),
                SmsMessage.phone_normalized.ilike(f"%{term}%"),
                SmsMessage.flux_message_id.ilike(f"%{term}%"),
            )
        )

    total = db.execute(select(func.count()).select_from(query.subquery())).scalar() or 0
    stmt = query.order_by(SmsMessage.created_at.desc(), SmsMessage.id.asc()).offset(offset).limit(limit)
    messages = list(db.execute(stmt).scalars().all())
    logger.debug(f"Retrieved {len(messages)} of {total} messages")
    return messages, total


def campaign_names(db: Session, campaign_ids: Iterable[str]) -> dict[str, Optional[str]]:
    from tillsms.models import SmsCampaign

    ids = sorted({cid for cid in campaign_ids if cid})
    if not ids:
        return {}
    rows = db.execute(select(SmsCampaign.id, SmsCampaign.name).where(SmsCampaign.id.in_(ids))).all()
    return {cid: name for cid, name in rows}


def fetch_message_history(db: Session, phones: list[str]) -> list:
    """(phone_normalized, status, created_at) for every message sent to the given phones."""
    from tillsms.models import SmsMessage

    stmt = select(SmsMessage.phone_normalized, SmsMessage.status, SmsMessage.created_at).where(
        SmsMessage.phone_normalized.in_(phones)
    )
    return list(db.execute(stmt).all())
