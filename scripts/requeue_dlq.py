# scripts/requeue_dlq.py
from rq import Queue

from repogrowth.config import app_config
from repogrowth.queueing.redis_conn import get_redis
from repogrowth.queueing.tasks import get_queue

if __name__ == "__main__":
    q_dlq = Queue(app_config.queue.dlq_name, connection=get_redis())
    q_main = get_queue()

    for job in q_dlq.jobs:
        print(f"{job.id}: {job.func_name} reason={job.meta.get('dlq_reason')!r}")
        q_main.enqueue(job.func, *job.args, **job.kwargs)
        q_dlq.remove(job)
        print("requeued", job.id)
