"""Wire the engine together from settings and the default database."""

from functools import lru_cache

from foundry_host.api.dispatcher import ActionDispatcher
from foundry_host.config import Settings, load_settings
from foundry_host.provisioners.base import Provisioners
from foundry_host.services.admin_service import AdminService
from foundry_host.services.auto_shutdown import AutoShutdownManager
from foundry_host.services.lifecycle import InstanceLifecycleManager
from foundry_host.services.notifications import NotificationService
from foundry_host.services.scheduler import LicenseScheduler
from foundry_host.services.store import Store


def build_dispatcher(store: Store, provisioners: Provisioners, settings: Settings, push=None) -> ActionDispatcher:
    lifecycle = InstanceLifecycleManager(store, provisioners, settings)
    scheduler = LicenseScheduler(store, lifecycle)
    lifecycle.scheduler = scheduler
    notifications = NotificationService(store, push=push)
    auto_shutdown = AutoShutdownManager(store, lifecycle, scheduler, notifications)
    admin = AdminService(store, lifecycle, scheduler, auto_shutdown)
    return ActionDispatcher(lifecycle, scheduler, auto_shutdown, admin, notifications)


@lru_cache(maxsize=1)
def get_dispatcher() -> ActionDispatcher:
    from foundry_host.db.session import SessionLocal
    from foundry_host.provisioners.aws.factory import build_aws_provisioners
    from telegram_bot.notify import send_telegram_message

    settings = load_settings()
    return build_dispatcher(
        Store(SessionLocal),
        build_aws_provisioners(settings),
        settings,
        push=send_telegram_message,
    )
