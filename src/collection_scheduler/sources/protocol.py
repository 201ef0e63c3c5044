from typing import Any, Dict, List, Optional, Protocol


class DataSource(Protocol):
    """
    Protocol for the external, rate-limited API tasks collect items from.
    """

    async def lookup(self, name: str, platform: str) -> Optional[Dict[str, Any]]:
        """
        Find an entity by display name.

        Returns:
            The entity descriptor, or None when nothing matches.
        """
        ...

    async def fetch_items(self, entity_id: str, platform: str, task_type: str) -> List[Any]:
        """
        Fetch the items currently available for an entity, in source order.

        Raises:
            ExternalFetchError: On any transport failure or non-success response.
        """
        ...
