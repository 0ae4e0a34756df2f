"""
Services package
"""
from app.services.coordination import CaseCoordinator, get_case_coordinator
from app.services.duplicate_detection import DuplicateDetector, get_duplicate_detector
from app.services.matching import ContractorMatcher, get_contractor_matcher
from app.services.notifications import NotificationDispatcher, get_notification_dispatcher
from app.services.record_store import RecordStore, get_record_store

__all__ = [
    "CaseCoordinator",
    "get_case_coordinator",
    "DuplicateDetector",
    "get_duplicate_detector",
    "ContractorMatcher",
    "get_contractor_matcher",
    "NotificationDispatcher",
    "get_notification_dispatcher",
    "RecordStore",
    "get_record_store",
]
