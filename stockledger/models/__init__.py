from stockledger.models.audit_log import AuditLog
from stockledger.models.location import StockLocation
from stockledger.models.product import Product
from stockledger.models.stock import StockEntry, StockMovement
