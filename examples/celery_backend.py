import asyncio
import logging

from collection_scheduler.backends.celery import CeleryJobQueue, create_celery_app
from collection_scheduler.config import Settings
from collection_scheduler.retry import RetryPolicy
from collection_scheduler.service import SchedulerService
from collection_scheduler.sources.cache import TTLCache
from collection_scheduler.sources.ea import EaApiClient
from collection_scheduler.storages.sqlalchemy import SqlAlchemyStorage

logging.basicConfig(level=logging.INFO)

settings = Settings()

celery_app = create_celery_app(settings, name="collection_scheduler_app")

storage = SqlAlchemyStorage(settings.database_url)
source = EaApiClient(base_url=settings.api_base_url, cache=TTLCache(ttl=settings.cache_ttl))
queue = CeleryJobQueue(
    celery_app,
    retry_policy=RetryPolicy(
        max_retries=settings.job_max_retries,
        base_delay=settings.job_retry_base_delay,
        multiplier=settings.job_retry_multiplier,
    ),
)

# Both the worker process and the trigger process import this module, so the
# worker registers the same job handler through the service.
service = SchedulerService(storage, storage, source, queue, settings=settings)


async def main() -> None:
    await service.startup()
    try:
        while True:
            health = await service.health()
            print(f"Trigger running: {health.trigger.is_running}, queue healthy: {health.queue_healthy}")
            await asyncio.sleep(settings.trigger_interval)
    finally:
        await service.shutdown()


if __name__ == "__main__":
    # create worker in other thread
    import threading

    def start_worker() -> None:
        import os
        os.system("celery -A examples.celery_backend.celery_app worker -P solo --loglevel=info")

    worker_thread = threading.Thread(target=start_worker, daemon=True)
    worker_thread.start()

    asyncio.run(main())
