from stockledger.models.business import Business, Warehouse
from stockledger.models.product import Batch, Product, Serial
from stockledger.models.location import StockLocation, StockTransfer
from stockledger.models.inventory import InventoryLedger, StockMovement
from stockledger.models.accounting import GLAccount, GLEntry
from stockledger.models.integration import IntegrationOutboxEvent

from stockledger.db.immutability import register_immutability_listeners

register_immutability_listeners()
