from app.business.revenue.models import Quote, QuoteItem, SalesOrder, SalesOrderItem

__all__ = ["Quote", "QuoteItem", "SalesOrder", "SalesOrderItem"]
