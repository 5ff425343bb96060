from .invoices_sqlite import SQLiteInvoiceStore
from .vendor_mapping_base import VendorMappingRepositoryBase
from .vendor_mappings import InMemoryVendorMappingRepository
from .vendor_mappings_sqlite import SQLiteVendorMappingRepository

__all__ = [
    "InMemoryVendorMappingRepository",
    "SQLiteInvoiceStore",
    "SQLiteVendorMappingRepository",
    "VendorMappingRepositoryBase",
]
