"""
Server-side Lua scripts implementing every job state transition.

Each script removes the job from its current state collections, adds it to
the target ones, updates the hash and publishes the event envelope in a
single atomic step. Collection keys are derived inside the scripts from the
prefix, which ties a queue to a single Redis node.

Return values are `{code, state}` pairs: code 1 applied, 0 refused by a state
guard (state is the current one), -1 job missing.
"""

from dataclasses import dataclass

from redis.asyncio import Redis
from redis.commands.core import AsyncScript

from jobqueue.constants import PRIORITY_SCORE_FACTOR

# Shared helpers prepended to every transition script.
_PRELUDE = f"""
local FACTOR = {PRIORITY_SCORE_FACTOR}

local function priority_score(job, id)
  return tonumber(redis.call('HGET', job, 'priority') or '0') * FACTOR + tonumber(id)
end

local function fmt(n)
  return string.format('%.0f', n)
end

local function move(prefix, id, jtype, from, to, score)
  redis.call('ZREM', prefix .. ':jobs:' .. from, id)
  redis.call('ZREM', prefix .. ':jobs:' .. jtype .. ':' .. from, id)
  redis.call('ZADD', prefix .. ':jobs:' .. to, score, id)
  redis.call('ZADD', prefix .. ':jobs:' .. jtype .. ':' .. to, score, id)
end
"""

# KEYS: job, types, events
# ARGV: prefix, id, type, state, score, envelope, field, value, ...
SAVE = """
local job, types_key, events = KEYS[1], KEYS[2], KEYS[3]
local prefix, id, jtype, state, score, envelope = ARGV[1], ARGV[2], ARGV[3], ARGV[4], ARGV[5], ARGV[6]
if redis.call('EXISTS', job) == 1 then
  return {0, redis.call('HGET', job, 'state')}
end
for i = 7, #ARGV, 2 do
  redis.call('HSET', job, ARGV[i], ARGV[i + 1])
end
redis.call('HSET', job, 'type', jtype, 'state', state)
redis.call('SADD', types_key, jtype)
redis.call('ZADD', prefix .. ':jobs:' .. state, score, id)
redis.call('ZADD', prefix .. ':jobs:' .. jtype .. ':' .. state, score, id)
redis.call('PUBLISH', events, envelope)
return {1, state}
"""

# KEYS: job, events
# ARGV: prefix, id, envelope, field, value, ...
UPDATE = """
local job, events = KEYS[1], KEYS[2]
local prefix, id, envelope = ARGV[1], ARGV[2], ARGV[3]
if redis.call('EXISTS', job) == 0 then
  return {-1, ''}
end
for i = 4, #ARGV, 2 do
  redis.call('HSET', job, ARGV[i], ARGV[i + 1])
end
local state = redis.call('HGET', job, 'state')
if state == 'inactive' then
  local jtype = redis.call('HGET', job, 'type')
  move(prefix, id, jtype, state, state, fmt(priority_score(job, id)))
end
redis.call('PUBLISH', events, envelope)
return {1, state}
"""

# KEYS: job, events
# ARGV: prefix, id, to, score ('' = priority score), allowed (csv, '' = any),
#       due_before ('' = unchecked), now, envelope, field, value, ...
# Returns {code, from_state, field, value, ...} with the hash as written.
TRANSITION = """
local job, events = KEYS[1], KEYS[2]
local prefix, id, to, score, allowed, due_before, now, envelope =
  ARGV[1], ARGV[2], ARGV[3], ARGV[4], ARGV[5], ARGV[6], ARGV[7], ARGV[8]
if redis.call('EXISTS', job) == 0 then
  return {-1, ''}
end
local from = redis.call('HGET', job, 'state')
if allowed ~= '' and not string.find(',' .. allowed .. ',', ',' .. from .. ',', 1, true) then
  return {0, from}
end
if due_before ~= '' then
  local current = redis.call('ZSCORE', prefix .. ':jobs:' .. from, id)
  if not current or tonumber(current) > tonumber(due_before) then
    return {0, from}
  end
end
if score == '' then
  score = fmt(priority_score(job, id))
end
local jtype = redis.call('HGET', job, 'type')
move(prefix, id, jtype, from, to, score)
for i = 9, #ARGV, 2 do
  redis.call('HSET', job, ARGV[i], ARGV[i + 1])
end
redis.call('HSET', job, 'state', to, 'updated_at', now)
redis.call('PUBLISH', events, envelope)
local out = {1, from}
for _, v in ipairs(redis.call('HGETALL', job)) do
  out[#out + 1] = v
end
return out
"""

# KEYS: job, events
# ARGV: prefix, id, now, error, retry_envelope, failed_envelope
FAIL = """
local job, events = KEYS[1], KEYS[2]
local prefix, id, now, err = ARGV[1], ARGV[2], tonumber(ARGV[3]), ARGV[4]
if redis.call('EXISTS', job) == 0 then
  return {-1, ''}
end
local from = redis.call('HGET', job, 'state')
if from ~= 'active' then
  return {0, from}
end
local remaining = redis.call('HINCRBY', job, 'attempts_remaining', -1)
if remaining < 0 then
  remaining = 0
  redis.call('HSET', job, 'attempts_remaining', 0)
end
local to, score, envelope
if remaining > 0 then
  envelope = ARGV[5]
  local backoff = tonumber(redis.call('HGET', job, 'backoff') or '0')
  if backoff > 0 then
    if redis.call('HGET', job, 'backoff_exponential') == '1' then
      local made = tonumber(redis.call('HGET', job, 'max_attempts')) - remaining
      backoff = backoff * 2 ^ (made - 1)
    end
    local due = now + backoff
    local created = tonumber(redis.call('HGET', job, 'created_at'))
    redis.call('HSET', job, 'delay', fmt(due - created))
    to, score = 'delayed', fmt(due)
  else
    to, score = 'inactive', fmt(priority_score(job, id))
  end
else
  envelope = ARGV[6]
  to, score = 'failed', fmt(now)
end
local jtype = redis.call('HGET', job, 'type')
move(prefix, id, jtype, from, to, score)
redis.call('HSET', job, 'state', to, 'error', err, 'updated_at', fmt(now))
redis.call('PUBLISH', events, envelope)
return {1, to}
"""

# KEYS: job, events
# ARGV: id, progress, now, envelope
PROGRESS = """
local job, events = KEYS[1], KEYS[2]
if redis.call('EXISTS', job) == 0 then
  return {-1, ''}
end
local state = redis.call('HGET', job, 'state')
if state ~= 'active' then
  return {0, state}
end
redis.call('HSET', job, 'progress', ARGV[2], 'updated_at', ARGV[3])
redis.call('PUBLISH', events, ARGV[4])
return {1, state}
"""

# KEYS: job, events
# ARGV: prefix, id, envelope
REMOVE = """
local job, events = KEYS[1], KEYS[2]
local prefix, id, envelope = ARGV[1], ARGV[2], ARGV[3]
if redis.call('EXISTS', job) == 0 then
  return {-1, ''}
end
local state = redis.call('HGET', job, 'state')
local jtype = redis.call('HGET', job, 'type')
redis.call('ZREM', prefix .. ':jobs:' .. state, id)
redis.call('ZREM', prefix .. ':jobs:' .. jtype .. ':' .. state, id)
redis.call('DEL', job)
redis.call('PUBLISH', events, envelope)
return {1, state}
"""


@dataclass
class Scripts:
    """Transition scripts registered against one client."""

    save: AsyncScript
    update: AsyncScript
    transition: AsyncScript
    fail: AsyncScript
    progress: AsyncScript
    remove: AsyncScript


def register_scripts(client: Redis) -> Scripts:
    """Register all transition scripts on `client` (loaded lazily via EVALSHA)."""
    return Scripts(
        save=client.register_script(SAVE),
        update=client.register_script(_PRELUDE + UPDATE),
        transition=client.register_script(_PRELUDE + TRANSITION),
        fail=client.register_script(_PRELUDE + FAIL),
        progress=client.register_script(PROGRESS),
        remove=client.register_script(REMOVE),
    )
