from courtflow.tasks.celery_app import celery
from courtflow.tasks import worker_jobs

@celery.task(name="courtflow.tasks.jobs.purge_expired_holds")
def purge_expired_holds():
    return worker_jobs.purge_expired_holds()
