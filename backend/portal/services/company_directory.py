from sqlalchemy import Text, cast
from sqlalchemy.orm import Session

from portal.models.company import Company


class CompanyDirectory:
    """Read-only company lookups by natural key, plus hierarchy traversal."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, company_id: str) -> Company | None:
        return self.db.get(Company, company_id)

    def by_reference_no(self, reference_no: int) -> Company | None:
        return (
            self.db.query(Company)
            .filter(Company.reference_no == reference_no)
            .order_by(Company.created_at)
            .first()
        )

    def by_code(self, codes: list[str]) -> Company | None:
        codes = [c for c in dict.fromkeys(codes) if c]
        if not codes:
            return None
        return (
            self.db.query(Company)
            .filter(Company.code.in_(codes))
            .order_by(Company.created_at)
            .first()
        )

    def by_reference_text(self, values: list[str]) -> Company | None:
        values = [v for v in dict.fromkeys(values) if v]
        if not values:
            return None
        return (
            self.db.query(Company)
            .filter(Company.reference_no.is_not(None))
            .filter(cast(Company.reference_no, Text).in_(values))
            .order_by(Company.created_at)
            .first()
        )

    def child_ids(self, company_id: str) -> list[str]:
        rows = self.db.query(Company.id).filter(Company.parent_id == company_id).all()
        return [r[0] for r in rows]

    def has_children(self, company_id: str) -> bool:
        return (
            self.db.query(Company.id).filter(Company.parent_id == company_id).first()
            is not None
        )

    def descendant_ids(self, company_id: str) -> list[str]:
        """All companies below ``company_id``, breadth first. Cycles are tolerated."""
        found: list[str] = []
        seen = {company_id}
        frontier = [company_id]
        while frontier:
            rows = (
                self.db.query(Company.id)
                .filter(Company.parent_id.in_(frontier))
                .all()
            )
            frontier = []
            for (child_id,) in rows:
                if child_id not in seen:
                    seen.add(child_id)
                    found.append(child_id)
                    frontier.append(child_id)
        return found
