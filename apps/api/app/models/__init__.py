from app.automation.models import AutomationRule, ExecutionLog
from app.business.billing.models import Invoice, InvoiceItem
from app.business.numbering import DocumentSequence
from app.business.payments.models import Payment
from app.business.revenue.models import Quote, QuoteItem, SalesOrder, SalesOrderItem
from app.crm.models import (
	CRMActivity,
	CRMCalendarEvent,
	CRMCompany,
	CRMContact,
	CRMDeal,
	CRMLead,
	CRMNote,
	CRMNotificationIntent,
	CRMTask,
)
from app.platform.ledger.models import LedgerAccount, LedgerEntry
from app.workflow.models import SagaRun

__all__ = [
	"AutomationRule",
	"CRMActivity",
	"CRMCalendarEvent",
	"CRMCompany",
	"CRMContact",
	"CRMDeal",
	"CRMLead",
	"CRMNote",
	"CRMNotificationIntent",
	"CRMTask",
	"DocumentSequence",
	"ExecutionLog",
	"Invoice",
	"InvoiceItem",
	"LedgerAccount",
	"LedgerEntry",
	"Payment",
	"Quote",
	"QuoteItem",
	"SagaRun",
	"SalesOrder",
	"SalesOrderItem",
]
