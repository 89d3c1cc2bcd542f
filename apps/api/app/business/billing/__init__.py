from app.business.billing.models import Invoice, InvoiceItem

__all__ = ["Invoice", "InvoiceItem"]
