"""Shared constants for opsflow."""

# step edge labels
EDGE_NEXT = "next"
EDGE_TRUE = "true"
EDGE_FALSE = "false"
EDGE_DEFAULT = "default"

# transport topics, one per command type
TOPIC_WORKFLOW_EXECUTE = "workflow.execute"
TOPIC_WORKFLOW_RESUME = "workflow.resume"
TOPIC_CAMPAIGN_CONTROL = "campaign.control"
TOPIC_SYNC_ENTITY = "sync.entity"

ALL_TOPICS = (
    TOPIC_WORKFLOW_EXECUTE,
    TOPIC_WORKFLOW_RESUME,
    TOPIC_CAMPAIGN_CONTROL,
    TOPIC_SYNC_ENTITY,
)

# domain events emitted by the engine itself
EVENT_CALL_COMPLETED = "call.completed"
EVENT_CAMPAIGN_COMPLETED = "campaign.completed"
EVENT_WEBHOOK_RECEIVED = "webhook.received"

CAMPAIGN_ACTIONS = ("start", "pause", "resume", "stop")
