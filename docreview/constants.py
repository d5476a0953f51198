"""Default values shared across the package."""

DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0

DEFAULT_UPLOAD_DAYS = 1
DEFAULT_PREPARE_DAYS = 2
DEFAULT_REVIEW_DAYS = 1

DEFAULT_ALLOWED_EXTENSIONS = (".xlsx", ".xls")

START_INSTRUCTIONS = "Workflow started"
END_INSTRUCTIONS = "Workflow completed successfully"
