"""
tags.py - EAS WBXML code pages and tag tokens.

Each code page is a fixed 0-63 token space; real tags start at 0x05, so a
page table is indexed by ``code - 5``.  Tags are referenced in two ways:

- protocol parsers compare the combined integer ``page << 6 | code`` against
  the constants below (e.g. ``SYNC_STATUS`` vs ``FOLDER_STATUS``);
- the serializer resolves symbolic names through ``CATALOG.lookup()``,
  optionally qualified with the namespace (``"Ping:Status"``).

The tables are immutable tuples built once at import and are safe to share
between threads.
"""

from __future__ import annotations

from typing import Dict, Optional, Tuple

PAGE_SHIFT = 6
PAGE_MASK = 0x3F
TAG_BASE = 0x05

# Code pages (MS-ASWBXML §2.1.2.1)
AIRSYNC = 0x00
CONTACTS = 0x01
EMAIL = 0x02
CALENDAR = 0x04
MOVE = 0x05
GIE = 0x06
FOLDER = 0x07
TASK = 0x09
CONTACTS2 = 0x0C
PING = 0x0D
GAL = 0x10
BASE = 0x11

PAGE_TABLES: Dict[int, Tuple[str, Tuple[str, ...]]] = {
    AIRSYNC: ("AirSync", (
        "Sync", "Responses", "Add", "Change", "Delete", "Fetch", "SyncKey",
        "ClientId", "ServerId", "Status", "Collection", "Class", "Version",
        "CollectionId", "GetChanges", "MoreAvailable", "WindowSize", "Commands",
        "Options", "FilterType", "Truncation", "RTFTruncation", "Conflict",
        "Collections", "ApplicationData", "DeletesAsMoves", "NotifyGUID",
        "Supported", "SoftDelete", "MIMESupport", "MIMETruncation", "Wait",
        "Limit", "Partial",
    )),
    CONTACTS: ("Contacts", (
        "Anniversary", "AssistantName", "AssistantTelephoneNumber", "Birthday",
        "Body", "BodySize", "BodyTruncated", "Business2TelephoneNumber",
        "BusinessAddressCity", "BusinessAddressCountry",
        "BusinessAddressPostalCode", "BusinessAddressState",
        "BusinessAddressStreet", "BusinessFaxNumber", "BusinessTelephoneNumber",
        "CarTelephoneNumber", "Categories", "Category", "Children", "Child",
        "CompanyName", "Department", "Email1Address", "Email2Address",
        "Email3Address", "FileAs", "FirstName", "Home2TelephoneNumber",
        "HomeAddressCity", "HomeAddressCountry", "HomeAddressPostalCode",
        "HomeAddressState", "HomeAddressStreet", "HomeFaxNumber",
        "HomeTelephoneNumber", "JobTitle", "LastName", "MiddleName",
        "MobileTelephoneNumber", "OfficeLocation", "OtherAddressCity",
        "OtherAddressCountry", "OtherAddressPostalCode", "OtherAddressState",
        "OtherAddressStreet", "PagerNumber", "RadioTelephoneNumber", "Spouse",
        "Suffix", "Title", "WebPage", "YomiCompanyName", "YomiFirstName",
        "YomiLastName", "CompressedRTF", "Picture",
    )),
    EMAIL: ("Email", (
        "Attachment", "Attachments", "AttName", "AttSize", "Att0Id",
        "AttMethod", "AttRemoved", "Body", "BodySize", "BodyTruncated",
        "DateReceived", "DisplayName", "DisplayTo", "Importance",
        "MessageClass", "Subject", "Read", "To", "Cc", "From", "ReplyTo",
        "AllDayEvent", "Categories", "Category", "DtStamp", "EndTime",
        "InstanceType", "BusyStatus", "Location", "MeetingRequest", "Organizer",
        "RecurrenceId", "Reminder", "ResponseRequested", "Recurrences",
        "Recurrence", "Recurrence_Type", "Recurrence_Until",
        "Recurrence_Occurrences", "Recurrence_Interval",
        "Recurrence_DayOfWeek", "Recurrence_DayOfMonth",
        "Recurrence_WeekOfMonth", "Recurrence_MonthOfYear", "StartTime",
        "Sensitivity", "TimeZone", "GlobalObjId", "ThreadTopic", "MIMEData",
        "MIMETruncated", "MIMESize", "InternetCPID", "Flag", "FlagStatus",
        "ContentClass", "FlagType", "CompleteTime",
    )),
    CALENDAR: ("Calendar", (
        "TimeZone", "AllDayEvent", "Attendees", "Attendee", "Email", "Name",
        "Body", "BodyTruncated", "BusyStatus", "Categories", "Category",
        "Rtf", "DtStamp", "EndTime", "Exception", "Exceptions", "Deleted",
        "ExceptionStartTime", "Location", "MeetingStatus", "OrganizerEmail",
        "OrganizerName", "Recurrence", "Type", "Until", "Occurrences",
        "Interval", "DayOfWeek", "DayOfMonth", "WeekOfMonth", "MonthOfYear",
        "Reminder", "Sensitivity", "Subject", "StartTime", "UID",
        "AttendeeStatus", "AttendeeType",
    )),
    MOVE: ("Move", (
        "MoveItems", "Move", "SrcMsgId", "SrcFldId", "DstFldId", "Response",
        "Status", "DstMsgId",
    )),
    GIE: ("ItemEstimate", (
        "GetItemEstimate", "Version", "Collections", "Collection", "Class",
        "CollectionId", "DateTime", "Estimate", "Response", "Status",
    )),
    FOLDER: ("FolderHierarchy", (
        "Folders", "Folder", "DisplayName", "ServerId", "ParentId", "Type",
        "Response", "Status", "ContentClass", "Changes", "Add", "Delete",
        "Update", "SyncKey", "FolderCreate", "FolderDelete", "FolderUpdate",
        "FolderSync", "Count", "Version",
    )),
    TASK: ("Tasks", (
        "Body", "BodySize", "BodyTruncated", "Categories", "Category",
        "Complete", "DateCompleted", "DueDate", "UtcDueDate", "Importance",
        "Recurrence", "Recurrence_Type", "Recurrence_Start", "Recurrence_Until",
        "Recurrence_Occurrences", "Recurrence_Interval",
        "Recurrence_DayOfMonth", "Recurrence_DayOfWeek",
        "Recurrence_WeekOfMonth", "Recurrence_MonthOfYear",
        "Recurrence_Regenerate", "Recurrence_DeadOccur", "ReminderSet",
        "ReminderTime", "Sensitivity", "StartDate", "UtcStartDate", "Subject",
        "CompressedRTF", "OrdinalDate", "SubOrdinalDate",
    )),
    CONTACTS2: ("Contacts2", (
        "CustomerId", "GovernmentId", "IMAddress", "IMAddress2", "IMAddress3",
        "ManagerName", "CompanyMainPhone", "AccountName", "NickName", "MMS",
    )),
    PING: ("Ping", (
        "Ping", "AutdState", "Status", "HeartbeatInterval", "Folders",
        "Folder", "Id", "Class", "MaxFolders",
    )),
    GAL: ("GAL", (
        "DisplayName", "Phone", "Office", "Title", "Company", "Alias",
        "FirstName", "LastName", "HomePhone", "MobilePhone", "EmailAddress",
    )),
    BASE: ("AirSyncBase", (
        "BodyPreference", "Type", "TruncationSize", "AllOrNone", "Reserved",
        "Body", "Data", "EstimatedDataSize", "Truncated", "Attachments",
        "Attachment", "DisplayName", "FileReference", "Method", "ContentId",
        "ContentLocation", "IsInline", "NativeBodyType", "ContentType",
    )),
}


def make_tag(page: int, code: int) -> int:
    return (page << PAGE_SHIFT) | code


def page_of(tag: int) -> int:
    return tag >> PAGE_SHIFT


def code_of_tag(tag: int) -> int:
    return tag & PAGE_MASK


class TagCatalog:
    """Read-only registry of (page, code) <-> name."""

    def __init__(self, tables: Dict[int, Tuple[str, Tuple[str, ...]]]):
        self._namespaces: Dict[int, str] = {}
        self._pages: Dict[int, Tuple[str, ...]] = {}
        self._page_by_namespace: Dict[str, int] = {}
        self._codes: Dict[Tuple[int, str], int] = {}
        self._global: Dict[str, list] = {}
        for page, (namespace, names) in tables.items():
            if len(names) > PAGE_MASK + 1 - TAG_BASE:
                raise ValueError(f"page {page} has too many tags ({len(names)})")
            self._namespaces[page] = namespace
            self._page_by_namespace[namespace] = page
            self._pages[page] = tuple(names)
            for index, name in enumerate(names):
                self._codes[(page, name)] = index + TAG_BASE
                self._global.setdefault(name, []).append(page)

    def resolve(self, page: int) -> Tuple[str, ...]:
        """Ordered tag names of ``page``; empty for pages this client does not know."""
        return self._pages.get(page, ())

    def namespace(self, page: int) -> Optional[str]:
        return self._namespaces.get(page)

    def code_of(self, page: int, name: str) -> int:
        try:
            return self._codes[(page, name)]
        except KeyError:
            raise KeyError(f"unknown tag {name!r} on page {page}") from None

    def name_of(self, page: int, code: int) -> Optional[str]:
        names = self._pages.get(page, ())
        index = code - TAG_BASE
        if 0 <= index < len(names):
            return names[index]
        return None

    def lookup(self, name: str, context_page: int = AIRSYNC) -> Tuple[int, int]:
        """
        Resolve a symbolic name to ``(page, code)``.

        ``"Namespace:Name"`` selects the page explicitly.  A bare name is looked
        up on ``context_page`` first (the page of the enclosing element), then
        across all pages; a bare name defined on several pages and absent from
        the context page is ambiguous.
        """
        if ":" in name:
            namespace, local = name.split(":", 1)
            if namespace not in self._page_by_namespace:
                raise KeyError(f"unknown namespace {namespace!r}")
            page = self._page_by_namespace[namespace]
            return page, self.code_of(page, local)
        if (context_page, name) in self._codes:
            return context_page, self._codes[(context_page, name)]
        pages = self._global.get(name)
        if not pages:
            raise KeyError(f"unknown tag {name!r}")
        if len(pages) > 1:
            spaces = ", ".join(self._namespaces[p] for p in pages)
            raise KeyError(f"tag {name!r} is ambiguous ({spaces}); qualify it")
        return pages[0], self._codes[(pages[0], name)]

    def qualified_name(self, tag: int) -> str:
        page, code = page_of(tag), code_of_tag(tag)
        name = self.name_of(page, code) or f"0x{code:02X}"
        namespace = self._namespaces.get(page, f"Page{page}")
        return f"{namespace}:{name}"


CATALOG = TagCatalog(PAGE_TABLES)


def _t(page: int, name: str) -> int:
    return make_tag(page, CATALOG.code_of(page, name))


# AirSync (CP 0)
SYNC_SYNC = _t(AIRSYNC, "Sync")
SYNC_RESPONSES = _t(AIRSYNC, "Responses")
SYNC_ADD = _t(AIRSYNC, "Add")
SYNC_CHANGE = _t(AIRSYNC, "Change")
SYNC_DELETE = _t(AIRSYNC, "Delete")
SYNC_SYNC_KEY = _t(AIRSYNC, "SyncKey")
SYNC_SERVER_ID = _t(AIRSYNC, "ServerId")
SYNC_STATUS = _t(AIRSYNC, "Status")
SYNC_COLLECTION = _t(AIRSYNC, "Collection")
SYNC_CLASS = _t(AIRSYNC, "Class")
SYNC_COLLECTION_ID = _t(AIRSYNC, "CollectionId")
SYNC_MORE_AVAILABLE = _t(AIRSYNC, "MoreAvailable")
SYNC_COMMANDS = _t(AIRSYNC, "Commands")
SYNC_COLLECTIONS = _t(AIRSYNC, "Collections")
SYNC_APPLICATION_DATA = _t(AIRSYNC, "ApplicationData")

# Email (CP 2)
EMAIL_ATTACHMENT = _t(EMAIL, "Attachment")
EMAIL_ATTACHMENTS = _t(EMAIL, "Attachments")
EMAIL_ATT_NAME = _t(EMAIL, "AttName")
EMAIL_ATT_SIZE = _t(EMAIL, "AttSize")
EMAIL_BODY = _t(EMAIL, "Body")
EMAIL_BODY_SIZE = _t(EMAIL, "BodySize")
EMAIL_DATE_RECEIVED = _t(EMAIL, "DateReceived")
EMAIL_DISPLAY_NAME = _t(EMAIL, "DisplayName")
EMAIL_SUBJECT = _t(EMAIL, "Subject")
EMAIL_READ = _t(EMAIL, "Read")
EMAIL_TO = _t(EMAIL, "To")
EMAIL_CC = _t(EMAIL, "Cc")
EMAIL_FROM = _t(EMAIL, "From")
EMAIL_REPLY_TO = _t(EMAIL, "ReplyTo")
EMAIL_MESSAGE_CLASS = _t(EMAIL, "MessageClass")
EMAIL_THREAD_TOPIC = _t(EMAIL, "ThreadTopic")

# Move (CP 5)
MOVE_MOVE_ITEMS = _t(MOVE, "MoveItems")
MOVE_RESPONSE = _t(MOVE, "Response")
MOVE_STATUS = _t(MOVE, "Status")
MOVE_SRCMSGID = _t(MOVE, "SrcMsgId")
MOVE_DSTMSGID = _t(MOVE, "DstMsgId")

# ItemEstimate (CP 6)
GIE_GET_ITEM_ESTIMATE = _t(GIE, "GetItemEstimate")
GIE_RESPONSE = _t(GIE, "Response")
GIE_STATUS = _t(GIE, "Status")
GIE_COLLECTION = _t(GIE, "Collection")
GIE_COLLECTION_ID = _t(GIE, "CollectionId")
GIE_ESTIMATE = _t(GIE, "Estimate")

# FolderHierarchy (CP 7)
FOLDER_DISPLAY_NAME = _t(FOLDER, "DisplayName")
FOLDER_SERVER_ID = _t(FOLDER, "ServerId")
FOLDER_PARENT_ID = _t(FOLDER, "ParentId")
FOLDER_TYPE = _t(FOLDER, "Type")
FOLDER_STATUS = _t(FOLDER, "Status")
FOLDER_CHANGES = _t(FOLDER, "Changes")
FOLDER_ADD = _t(FOLDER, "Add")
FOLDER_DELETE = _t(FOLDER, "Delete")
FOLDER_UPDATE = _t(FOLDER, "Update")
FOLDER_SYNC_KEY = _t(FOLDER, "SyncKey")
FOLDER_FOLDER_SYNC = _t(FOLDER, "FolderSync")
FOLDER_COUNT = _t(FOLDER, "Count")

# Ping (CP 13)
PING_PING = _t(PING, "Ping")
PING_STATUS = _t(PING, "Status")
PING_HEARTBEAT_INTERVAL = _t(PING, "HeartbeatInterval")
PING_FOLDERS = _t(PING, "Folders")
PING_FOLDER = _t(PING, "Folder")
PING_MAX_FOLDERS = _t(PING, "MaxFolders")

# AirSyncBase (CP 17)
BASE_BODY = _t(BASE, "Body")
BASE_TYPE = _t(BASE, "Type")
BASE_DATA = _t(BASE, "Data")
BASE_ESTIMATED_DATA_SIZE = _t(BASE, "EstimatedDataSize")
BASE_ATTACHMENTS = _t(BASE, "Attachments")
BASE_ATTACHMENT = _t(BASE, "Attachment")
BASE_DISPLAY_NAME = _t(BASE, "DisplayName")
BASE_FILE_REFERENCE = _t(BASE, "FileReference")
