# --------------------------------
# DI container
# --------------------------------
from functools import lru_cache

from imagegate.config import Settings, get_settings
from imagegate.domain.packages.search import PackageSearch
from imagegate.domain.requests.repository import (
    InMemoryRequestStore,
    RequestStore,
    SqlRequestStore,
)
from imagegate.infrastructure.db.connection import build_session_factory
from imagegate.runtime.build_monitor import BuildMonitor
from imagegate.runtime.events import EventSink, HttpEventNotifier, NoopEventSink
from imagegate.runtime.matcher import ImageMatcher
from imagegate.runtime.scheduler import Scheduler
from imagegate.runtime.workflow import ApprovalWorkflow
from imagegate.tools.base import CommandRunner
from imagegate.tools.chainctl import ChainctlGateway


def build_store(settings: Settings) -> RequestStore:
    if settings.store_backend == "sql":
        return SqlRequestStore(build_session_factory(settings.database_url))
    return InMemoryRequestStore()


def build_event_sink(settings: Settings) -> EventSink:
    if settings.notifier_url:
        return HttpEventNotifier(settings.notifier_url)
    return NoopEventSink()


class Container:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        runner: CommandRunner | None = None,
        store: RequestStore | None = None,
        gateway: ChainctlGateway | None = None,
        events: EventSink | None = None,
    ):
        self._settings = settings or get_settings()
        self._store = store or build_store(self._settings)
        self._gateway = gateway or ChainctlGateway.from_settings(self._settings, runner=runner)
        self._scheduler = Scheduler()
        self._monitor = BuildMonitor(
            gateway=self._gateway,
            store=self._store,
            scheduler=self._scheduler,
        )
        self._workflow = ApprovalWorkflow(
            store=self._store,
            gateway=self._gateway,
            matcher=ImageMatcher(self._gateway),
            monitor=self._monitor,
            events=events or build_event_sink(self._settings),
            approver_ids=self._settings.approvers,
        )
        self._package_search = PackageSearch(
            runner,
            timeout=self._settings.package_search_timeout_seconds,
        )

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def store(self) -> RequestStore:
        return self._store

    @property
    def gateway(self) -> ChainctlGateway:
        return self._gateway

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def monitor(self) -> BuildMonitor:
        return self._monitor

    @property
    def workflow(self) -> ApprovalWorkflow:
        return self._workflow

    @property
    def package_search(self) -> PackageSearch:
        return self._package_search


@lru_cache
def get_container():
    return Container()
