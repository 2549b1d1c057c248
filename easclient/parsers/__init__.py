from .email_sync import EmailSyncParser
from .folder_sync import FolderSyncParser
from .item_estimate import ItemEstimateParser
from .move_items import MoveItemsParser
from .ping import PingParser
from .pim_sync import PimSyncParser

__all__ = [
    "EmailSyncParser",
    "FolderSyncParser",
    "ItemEstimateParser",
    "MoveItemsParser",
    "PimSyncParser",
    "PingParser",
]
