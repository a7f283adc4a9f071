"""Persist event-to-entity links for a batch of usage events."""

from typing import Dict, List, Optional

from .customer_catalog import CustomerCatalog
from .models import EventLink, UsageEvent
from .resolver import ResolutionContext, resolve_event
from .utils import PerformanceTimer, get_logger


class AssociationSynchronizer:
    """Resolve events and replace their link rows.

    Re-running for the same events yields the same links: existing links are
    deleted before the new ones are inserted.
    """

    def __init__(self, store, directory, catalog: Optional[CustomerCatalog] = None):
        self.store = store
        self.directory = directory
        self.catalog = catalog or CustomerCatalog()
        self.logger = get_logger("synchronizer")

    def synchronize(self, events: List[UsageEvent]) -> None:
        """Resolve ``events`` and persist their links.

        Also sets each event's late-bound ``project_id`` to the resolved
        project, both in memory and in the store; events whose project no
        longer resolves lose their stale id.
        """
        if not events:
            return

        with PerformanceTimer(f"Synchronize {len(events)} event associations", self.logger):
            context = ResolutionContext.build(self.directory, self.catalog)

            links: List[EventLink] = []
            assignments: Dict[str, Optional[int]] = {}
            for event in events:
                link = resolve_event(event, context)
                if event.project_id != link.project_id:
                    # A project that no longer resolves clears the stale binding.
                    event.project_id = link.project_id
                    assignments[event.id] = link.project_id
                if not link.is_empty:
                    links.append(link)

            self.store.replace_event_links([event.id for event in events], links)
            if assignments:
                self.store.set_event_project_ids(assignments)

            self.logger.info(
                "Synchronized event associations",
                events=len(events),
                links=len(links),
                projects_changed=len(assignments),
                unresolved=len(events) - len(links),
            )
