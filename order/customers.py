from common.clients.services import CustomerServiceClient
from common.db.store import KeyValueStore
from common.errors import DBError, DependencyUnavailableError, Result


def replica_key(customer_id: int) -> str:
    return f"customer:{customer_id}"


class CustomerDirectory:
    """Answers "does this customer exist", asking the customer service first.

    Every positive answer is remembered in a local replica. When the customer
    service is unavailable, a customer found in the replica is accepted;
    anyone else is reported as unavailable, never as existing.
    """

    def __init__(self, logger, client: CustomerServiceClient, db: KeyValueStore):
        self.logger = logger
        self.client = client
        self.db = db

    async def exists(self, customer_id: int) -> Result[bool, DependencyUnavailableError | DBError]:
        try:
            found = await self.client.customer_exists(customer_id)
        except DependencyUnavailableError as e:
            return await self._from_replica(customer_id, e)
        try:
            if found:
                await self.db.set(replica_key(customer_id), b"1")
            else:
                await self.db.delete(replica_key(customer_id))
        except DBError as e:
            self.logger.warning(f"Could not update customer replica for {customer_id}: {e}")
        return found, None

    async def _from_replica(self, customer_id: int, cause: DependencyUnavailableError):
        try:
            known = await self.db.get(replica_key(customer_id))
        except DBError as e:
            return False, e
        if known:
            self.logger.warning(f"Customer service unavailable ({cause.reason}), "
                                f"customer {customer_id} accepted from local replica")
            return True, None
        self.logger.error(f"Customer service unavailable and customer {customer_id} is not replicated")
        return False, cause
