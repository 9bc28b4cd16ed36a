from reelfix.workers.celery_app import celery_app
from reelfix.services.pipeline import PipelineOrchestrator
from reelfix.services.job_store import JobStore
import logging

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=0)
def process_video_task(self, video_id: str):
    """
    Run the repair pipeline for one video.

    Not retried: a failed job is terminal and the user re-triggers it
    through the reprocess endpoint.
    """
    try:
        return PipelineOrchestrator().process_video(video_id)
    except Exception as e:
        # The orchestrator records its own failures; this only runs when
        # the store itself was unreachable mid-job
        logger.exception(f"Processing task crashed for {video_id}: {e}")
        try:
            JobStore().fail(None, video_id, f"Processing crashed: {e}")
        except Exception as store_error:
            logger.error(f"Could not mark {video_id} as failed: {store_error}")
        raise


def dispatch_processing(video_id: str):
    """Hand a video to the worker queue"""
    process_video_task.delay(video_id)
    logger.info(f"Dispatched processing for video {video_id}")
