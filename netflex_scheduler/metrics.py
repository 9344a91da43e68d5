from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

# Keep metrics module-level singletons
jobs_dispatched_total = Counter("jobs_dispatched_total", "Jobs submitted to the remote scheduler")
dispatch_errors_total = Counter("dispatch_errors_total", "Failed submissions to the remote scheduler")
dispatch_latency_seconds = Histogram("dispatch_latency_seconds", "Time to submit a job to the remote scheduler")
request_latency_seconds = Histogram("request_latency_seconds", "HTTP request latency seconds")

# Callback / execution metrics
callbacks_received_total = Counter("callbacks_received_total", "Scheduler callbacks received")
callbacks_rejected_total = Counter("callbacks_rejected_total", "Scheduler callbacks rejected", ["reason"])
jobs_executed_total = Counter("jobs_executed_total", "Jobs executed from scheduler callbacks")
job_failures_total = Counter("job_failures_total", "Jobs that failed during a scheduler callback")
execution_latency_seconds = Histogram("execution_latency_seconds", "Job execution latency seconds")


def metrics_response():
    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
