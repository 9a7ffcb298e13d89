from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from core.config import CleanerConfig
from core.errors import ArrRequestError, RemovalError
from core.events import EventBus
from core.models import CleanerResultItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemovalOptions:
    remove_from_client: bool
    blocklist: bool
    skip_redownload: bool
    change_category: bool

    def as_kwargs(self) -> Dict[str, Any]:
        return {
            'remove_from_client': self.remove_from_client,
            'blocklist': self.blocklist,
            'skip_redownload': self.skip_redownload,
            'change_category': self.change_category,
        }


def build_removal_options(item: CleanerResultItem, config: CleanerConfig) -> RemovalOptions:
    # Changing the category only makes sense for torrent clients
    return RemovalOptions(
        remove_from_client=config.remove_from_client,
        blocklist=config.add_to_blocklist,
        skip_redownload=not config.search_after_removal,
        change_category=config.change_category_enabled and item.protocol == 'torrent',
    )


async def remove_queue_item(
    client: Any,
    item: CleanerResultItem,
    config: CleanerConfig,
    *,
    event_bus: Optional[EventBus] = None,
) -> bool:
    """Delete one item from the remote queue.

    Returns True when the item was removed and False when the service reported
    it as already gone (404). Any other failure raises :class:`RemovalError`.
    """
    options = build_removal_options(item, config)
    instance_id = client.instance.id
    try:
        await client.delete_queue_item(item.id, **options.as_kwargs())
    except ArrRequestError as e:
        if e.not_found:
            logger.info(f'Instance {instance_id}: queue item id={item.id} already removed')
            if event_bus is not None:
                event_bus.emit('already_removed', instance=instance_id, item=item)
            return False
        raise RemovalError(str(e), e.status) from e
    logger.debug(f'Instance {instance_id}: removed id={item.id} title={item.title} reason={item.reason}')
    if event_bus is not None:
        event_bus.emit('remove', instance=instance_id, item=item, reason=item.reason, **options.as_kwargs())
    return True
