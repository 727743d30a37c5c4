from __future__ import annotations

# Runtime lifecycle
STARTUP_INVALID_CONFIG = "startup.invalid_config"
STARTUP_READY = "startup.ready"
STARTUP_NOTICE_SENT = "startup.notice.sent"
STARTUP_NOTICE_FAILED = "startup.notice.failed"
STARTUP_NOTICE_NO_GROUPS = "startup.notice.no_groups"
STARTUP_RESOURCE_LIMIT_FAILED = "startup.resource_limit_failed"
LOOP_STATE_CHANGED = "loop.state_changed"
SHUTDOWN_REQUESTED = "shutdown.requested"
SHUTDOWN_COMPLETE = "shutdown.complete"
SHUTDOWN_RUN_ONCE_COMPLETE = "shutdown.run_once_complete"
SHUTDOWN_UNEXPECTED_ERROR = "shutdown.unexpected_error"

# Preflight
PREFLIGHT_PROBE_FAILED = "preflight.probe_failed"
PREFLIGHT_COMPLETE = "preflight.complete"
PREFLIGHT_FAILED = "preflight.failed"

# Cycle
CYCLE_START = "cycle.start"
CYCLE_COMPLETE = "cycle.complete"
CYCLE_ITERATION_FAILED = "cycle.iteration_failed"
CYCLE_FATAL_ERROR = "cycle.fatal_error"
CYCLE_BACKOFF = "cycle.backoff"
CYCLE_NO_GROUPS = "cycle.no_groups"
CATEGORY_POLL_COMPLETE = "category.poll.complete"
CATEGORY_POLL_FAILED = "category.poll.failed"
CATEGORY_DISABLED = "category.disabled"

# Checkpoint cache
CHECKPOINT_FIRST_RUN = "checkpoint.first_run"
CHECKPOINT_ADVANCED = "checkpoint.advanced"
CACHE_INVALID_JSON = "cache.invalid_json"
CACHE_READ_FAILED = "cache.read_failed"
CACHE_PERSIST_FAILED = "cache.persist_failed"

# Dispatch
DISPATCH_SENT = "dispatch.sent"
DISPATCH_FAILED = "dispatch.failed"
DISPATCH_TIMEOUT = "dispatch.timeout"
DISPATCH_DRY_RUN = "dispatch.dry_run"
TRANSPORT_DELIVERED = "transport.delivered"
FANOUT_PARALLEL = "fanout.parallel"
FANOUT_COMPLETE = "fanout.complete"
ADVERTISEMENT_RECORD_FAILED = "advertisement.record_failed"

# Bulk broadcast
BROADCAST_START = "broadcast.start"
BROADCAST_NO_ENTITIES = "broadcast.no_entities"
BROADCAST_ENTITY_COMPLETE = "broadcast.entity.complete"
BROADCAST_ENTITY_FAILED = "broadcast.entity.failed"
BROADCAST_NO_MEMBERS = "broadcast.no_members"
BROADCAST_COMPLETE = "broadcast.complete"
BROADCAST_FAILED = "broadcast.failed"

# Manual poll
MANUAL_POLL_COMPLETE = "manual_poll.complete"
