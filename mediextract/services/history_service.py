"""
Persisted extraction history.

Completed DocumentResults are appended after every successful document and
can be listed newest first or cleared.
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from mediextract.db import ExtractionHistory, get_session_factory, init_db
from mediextract.models.records import DocumentResult, TokenUsage

logger = logging.getLogger(__name__)


class HistoryService:
    """Append-only store of completed document results."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        """
        Args:
            session_factory: SQLAlchemy session factory (defaults to the app database)
        """
        self.session_factory = session_factory or get_session_factory()
        init_db(self.session_factory.kw["bind"])

    def append(self, result: DocumentResult) -> int:
        """
        Save a document result.

        Returns:
            ID of the new history row
        """
        usage = result.token_usage
        row = ExtractionHistory(
            file_name=result.file_name,
            file_size=result.file_size,
            status=result.status.value,
            completed_at=result.completed_at,
            page_count=result.page_count,
            prompt_tokens=usage.prompt_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            pre_isolation_check=result.pre_isolation_check,
            isolation_check=result.isolation_check,
            records=[r.model_dump(mode="json") for r in result.records],
            logs=[log.model_dump(mode="json") for log in result.logs],
        )
        with self.session_factory() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info(f"Saved history entry {row.id} for {result.file_name}")
            return row.id

    def list_results(self, limit: Optional[int] = None) -> List[DocumentResult]:
        """Get saved results, newest first."""
        with self.session_factory() as session:
            query = session.query(ExtractionHistory).order_by(
                ExtractionHistory.created_at.desc(), ExtractionHistory.id.desc()
            )
            if limit is not None:
                query = query.limit(limit)
            return [self._to_result(row) for row in query.all()]

    def clear(self) -> int:
        """
        Delete every history entry.

        Returns:
            Number of rows deleted
        """
        with self.session_factory() as session:
            deleted = session.query(ExtractionHistory).delete()
            session.commit()
        logger.info(f"Cleared {deleted} history entries")
        return deleted

    @staticmethod
    def _to_result(row: ExtractionHistory) -> DocumentResult:
        return DocumentResult(
            file_name=row.file_name,
            file_size=row.file_size or 0,
            status=row.status,
            records=row.records or [],
            logs=row.logs or [],
            token_usage=TokenUsage(
                prompt_tokens=row.prompt_tokens or 0,
                output_tokens=row.output_tokens or 0,
                total_tokens=row.total_tokens or 0,
            ),
            isolation_check=row.isolation_check,
            pre_isolation_check=row.pre_isolation_check,
            completed_at=row.completed_at,
            page_count=row.page_count,
        )
