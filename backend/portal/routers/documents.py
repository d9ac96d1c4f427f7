from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from portal.database import get_db
from portal.dependencies import get_current_user
from portal.models.document import CreditNote, Invoice, Statement
from portal.models.user import User
from portal.schemas.document import DocumentListResponse, DocumentResponse
from portal.services.access_service import accessible_company_ids, apply_company_filter, can_access

router = APIRouter(tags=["documents"])

ROUTE_MODELS = {
    "invoices": Invoice,
    "credit-notes": CreditNote,
    "statements": Statement,
}


def _doc_to_response(doc) -> DocumentResponse:
    return DocumentResponse(
        id=doc.id,
        document_type=doc.kind,
        company_id=doc.company_id,
        file_id=doc.file_id,
        document_number=doc.document_number,
        issue_date=doc.issue_date,
        amount=doc.amount,
        vat_amount=doc.vat_amount,
        file_url=doc.file_url,
        document_status=doc.document_status,
        retention_start_date=doc.retention_start_date,
        retention_expiry_date=doc.retention_expiry_date,
        period_end=getattr(doc, "period_end", None),
        created_at=doc.created_at,
        updated_at=doc.updated_at,
        deleted_at=doc.deleted_at,
    )


def _register(path: str, model):
    async def list_documents(
        company_id: str | None = Query(None),
        page: int = Query(1, ge=1),
        per_page: int = Query(50, ge=1, le=200),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ):
        query = db.query(model).filter(model.deleted_at.is_(None))
        query = apply_company_filter(query, model, accessible_company_ids(db, user))
        if company_id:
            query = query.filter(model.company_id == company_id)
        total = query.count()
        docs = (
            query.order_by(model.created_at.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
            .all()
        )
        return DocumentListResponse(
            documents=[_doc_to_response(d) for d in docs], total=total, page=page, per_page=per_page
        )

    async def get_document(
        document_id: str,
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ):
        doc = db.get(model, document_id)
        # Out-of-scope documents are reported as missing.
        if doc is None or doc.deleted_at is not None or not can_access(
            accessible_company_ids(db, user), doc.company_id
        ):
            raise HTTPException(status_code=404, detail=f"{model.label} not found")
        return _doc_to_response(doc)

    router.add_api_route(
        f"/{path}", list_documents, methods=["GET"], response_model=DocumentListResponse,
        name=f"list_{model.kind}s",
    )
    router.add_api_route(
        f"/{path}/{{document_id}}", get_document, methods=["GET"], response_model=DocumentResponse,
        name=f"get_{model.kind}",
    )


for _path, _model in ROUTE_MODELS.items():
    _register(_path, _model)
