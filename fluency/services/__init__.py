"""Services: completion coordinator, isolated worker, notifications, language detection."""
from .coordinator import SessionCoordinator
from .language import HttpLanguageDetector, LanguageDetector, StaticLanguageDetector, create_language_detector
from .notifier import LogNotifier, Notifier, WebSocketNotifier
from .worker import IsolatedWorker, WorkerTimeoutError

__all__ = [
    "HttpLanguageDetector",
    "IsolatedWorker",
    "LanguageDetector",
    "LogNotifier",
    "Notifier",
    "SessionCoordinator",
    "StaticLanguageDetector",
    "WebSocketNotifier",
    "WorkerTimeoutError",
    "create_language_detector",
]
