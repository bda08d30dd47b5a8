from prometheus_client import Counter, Histogram

REQUESTS_ENQUEUED = Counter(
    "generation_requests_enqueued_total",
    "Generation requests accepted into the queue",
)

REQUESTS_REJECTED = Counter(
    "generation_requests_rejected_total",
    "Generation requests rejected at intake",
    ["reason"],
)

REQUESTS_FINISHED = Counter(
    "generation_requests_finished_total",
    "Generation requests that reached a terminal state",
    ["status"],
)

CREDITS_REFUNDED = Counter(
    "generation_credits_refunded_total",
    "Free credits returned to users after failed generations",
)

BACKEND_DURATION = Histogram(
    "generation_backend_duration_seconds",
    "Time spent waiting on the generation backend",
    buckets=(1, 2.5, 5, 10, 20, 30, 60, 120, 300),
)
