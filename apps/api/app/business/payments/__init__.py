from app.business.payments.models import Payment

__all__ = ["Payment"]
