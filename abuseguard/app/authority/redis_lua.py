"""Redis Lua scripts for the remote authority.

Each script runs atomically inside Redis, so concurrent requests for the
same identifier are serialized: two requests can never both observe
"not yet blocked" once the threshold has been reached.
"""

# Sliding window check-and-record with blocking.
# The block marker outlives the block by one window so an expired block
# can still be detected and the stale attempts cleared.
# Returns {allowed, remaining, blocked_until}.
CHECK_AND_RECORD_SCRIPT = """
    local attempts_key = KEYS[1]
    local block_key = KEYS[2]
    local now = tonumber(ARGV[1])
    local window_ms = tonumber(ARGV[2])
    local max_attempts = tonumber(ARGV[3])
    local block_ms = tonumber(ARGV[4])
    local member = ARGV[5]

    local blocked_until = tonumber(redis.call('GET', block_key) or '0')
    if blocked_until > now then
        return {0, 0, blocked_until}
    end
    if blocked_until > 0 then
        redis.call('DEL', attempts_key, block_key)
    end

    -- Keep attempts inside [now - window_ms, now]
    redis.call('ZREMRANGEBYSCORE', attempts_key, '-inf', '(' .. (now - window_ms))
    local count = redis.call('ZCARD', attempts_key)

    if count >= max_attempts then
        local new_until = now + block_ms
        redis.call('SET', block_key, new_until, 'PX', block_ms + window_ms)
        return {0, 0, new_until}
    end

    redis.call('ZADD', attempts_key, now, member)
    redis.call('PEXPIRE', attempts_key, window_ms)
    return {1, max_attempts - count - 1, 0}
"""
