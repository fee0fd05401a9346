"""Engine-wide defaults."""

DEFAULT_TIMEOUT_SECONDS = 3600
DEFAULT_MAX_CONCURRENT_INSTANCES = 10
DEFAULT_RETENTION_DAYS = 30
DEFAULT_MAX_SUBPROCESS_DEPTH = 10

DEFAULT_SEMVER = "1.0.0"

# Metric weights for A/B winner selection; unlisted metrics weigh 1.
METRIC_WEIGHTS = {"conversion": 2}

DEFAULT_WORKFLOW_NAME = "Default Content Workflow"

# Collections used by the document store.
DEFINITIONS = "workflows"
INSTANCES = "workflow_instances"
VERSIONS = "content_versions"
AB_TESTS = "ab_tests"
