"""
Company visibility for users.

``accessible_company_ids`` returns ``None`` for unrestricted users and a list
otherwise. An empty list means the user sees nothing; queries built from it
must match no rows.
"""
from sqlalchemy import false
from sqlalchemy.orm import Query, Session

from portal.models.user import User
from portal.services.company_directory import CompanyDirectory


def accessible_company_ids(db: Session, user: User) -> list[str] | None:
    if user.is_privileged or user.all_companies:
        return None

    directory = CompanyDirectory(db)
    accessible: list[str] = []
    for company in user.companies:
        accessible.append(company.id)
        accessible.extend(directory.descendant_ids(company.id))
    return list(dict.fromkeys(accessible))


def apply_company_filter(query: Query, model, company_ids: list[str] | None) -> Query:
    if company_ids is None:
        return query
    if not company_ids:
        return query.filter(false())
    return query.filter(model.company_id.in_(company_ids))


def can_access(company_ids: list[str] | None, company_id: str | None) -> bool:
    if company_ids is None:
        return True
    return company_id in company_ids
