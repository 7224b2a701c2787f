BATCH_BACKOFF_SECONDS = 0.2  # multiplied by the attempt number
UNASSIGNED_COMMENT = "Unassigned from Retention Portal"
VICIDIAL_REQUEST_TIMEOUT = 15
MAX_VICIDIAL_LEAD_ID = 1000000000
