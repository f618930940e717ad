"""
Customer identifier sync: seed portal profiles with ERP email addresses.

Candidates come from three SuiteQL reads, in priority order: the primary
email of active customers, the alternate email of customers without a
primary one, and the email of the first contact of the remaining
customers. Duplicate emails keep their first candidate. Profiles are
insert-only: an existing profile (and its user link) is never modified.
"""

from typing import Dict, List, Set

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.exceptions import DatabaseError
from ingestion.base import SyncJob
from ingestion.loaders.postgres_loader import PostgresLoader, SyncTarget
from ingestion.remote.client import NetSuiteClient
from ingestion.transformers.normalizer import RecordNormalizer, chunked, dedupe_first
from models.profile import Profile
from schemas.records import CustomerIdentifierRecord

logger = logging.getLogger(__name__)

PROFILE_TARGET = SyncTarget(
    model=Profile,
    natural_key=("email",),
    insert_only=True,
)

PRIMARY_EMAIL_QUERY = """
    select id, email
    from customer
    where isinactive = 'F' and email is not null and length(trim(email)) > 0
    order by id
"""

ALT_EMAIL_QUERY = """
    select id, altemail
    from customer
    where isinactive = 'F' and altemail is not null and length(trim(altemail)) > 0
    order by id
"""

CONTACT_EMAIL_QUERY = """
    with primary_contact as (
        select company as customer_id, min(id) as contact_id
        from contact
        where email is not null and length(trim(email)) > 0
        group by company
    )
    select p.customer_id as id, c.email
    from primary_contact p
    join contact c on c.id = p.contact_id
    where p.customer_id is not null
    order by p.customer_id
"""

PROFILE_BATCH_SIZE = 500


class CustomerIdentifierSyncJob(SyncJob):
    """Insert-only merge of email -> customer id into profiles"""

    job_name = "customer_identifiers"

    def __init__(
        self,
        db_session: AsyncSession,
        client: NetSuiteClient,
        dry_run: bool = False,
        limit: int = 5,
    ):
        super().__init__(db_session, client, dry_run)
        self.limit = limit
        self.parameters = {"dry": dry_run, "limit": limit}

    async def _collect_candidates(self, normalizer: RecordNormalizer) -> List[CustomerIdentifierRecord]:
        candidates: List[CustomerIdentifierRecord] = []
        covered: Set[int] = set()

        sources = (
            ("primary", PRIMARY_EMAIL_QUERY, "email"),
            ("alternate", ALT_EMAIL_QUERY, "altemail"),
            ("contact", CONTACT_EMAIL_QUERY, "email"),
        )
        for source, statement, email_field in sources:
            rows = await self.client.query(statement, tag=f"identifiers:{source}")
            self.count("read", len(rows))
            records = normalizer.normalize_many(
                rows, lambda row: normalizer.normalize_identifier(row, email_field)
            )
            added = 0
            for record in records:
                if record.netsuite_customer_id in covered:
                    continue
                candidates.append(record)
                added += 1
            covered.update(r.netsuite_customer_id for r in records)
            self.context.setdefault("sources", {})[source] = added

        return candidates

    async def _existing_emails(self, emails: List[str]) -> Set[str]:
        found: Set[str] = set()
        try:
            for chunk in chunked(emails, 1000):
                result = await self.db.execute(select(Profile.email).where(Profile.email.in_(chunk)))
                found.update(result.scalars().all())
        except SQLAlchemyError as e:
            raise DatabaseError(
                "Failed to look up existing profiles",
                context={"operation": "SELECT", "table_name": Profile.__tablename__},
                original_exception=e,
            )
        return found

    async def _preview(self, candidates: List[CustomerIdentifierRecord]) -> Dict[str, list]:
        sample = candidates[:self.limit]
        existing = await self._existing_emails([r.email for r in sample])
        return {
            "existing": [r.to_row() for r in sample if r.email in existing],
            "new": [r.to_row() for r in sample if r.email not in existing],
        }

    async def execute(self) -> None:
        normalizer = RecordNormalizer(self.job_name)
        candidates = await self._collect_candidates(normalizer)
        self.count("rejected", normalizer.rejected)

        candidates, duplicates = dedupe_first(candidates, key=lambda r: r.email)
        self.count("duplicate_emails", duplicates)
        self.count("candidates", len(candidates))

        loader = PostgresLoader(self.db, batch_size=PROFILE_BATCH_SIZE, dry_run=self.dry_run)
        result = await loader.reconcile(PROFILE_TARGET, candidates)
        self.count("inserted", result.inserted)
        self.count("already_present", len(candidates) - result.inserted)

        if self.dry_run:
            self.context["preview"] = await self._preview(candidates)
