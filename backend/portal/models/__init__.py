from portal.models.setting import AppSetting
from portal.models.company import Company
from portal.models.user import User, user_companies
from portal.models.file import FileRecord
from portal.models.document import CreditNote, Invoice, Statement, DOCUMENT_MODELS

__all__ = [
    "AppSetting", "Company", "User", "user_companies", "FileRecord",
    "Invoice", "CreditNote", "Statement", "DOCUMENT_MODELS",
]
