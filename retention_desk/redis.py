import redis
from django.conf import settings

##### NAMESPACES
BULK_ASSIGN_LOCK_REDIS_KEY = "BULK_ASSIGN_LOCK" #held while a plan is built from the unassigned pool and written
VICIDIAL_LEAD_INDEX_REDIS_KEY = "VICIDIAL_LEAD_INDEX" #hash where key is deal|phone|list|agent, value is index entry

LOCK_TIMEOUTS = 30 #bulk writes can take a while
LOCK_WAIT = 3 #seconds a request waits for a held lock before giving up
SLEEP = 0.05
#####


conn = redis.Redis.from_url(
    settings.REDIS_URL,
    decode_responses=True
)
