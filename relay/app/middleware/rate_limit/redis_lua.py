"""Redis Lua script for the distributed sliding-window rate limiter.

Prune, count, conditional insert and expiry refresh run as one server-side
script, so concurrent requests on different instances cannot both read a
stale count and both be admitted. A denied request inserts nothing.
"""

# KEYS[i]            - sorted set holding request timestamps for window i
# ARGV[1]            - current time in epoch milliseconds
# ARGV[2]            - unique member for this request (timestamp + suffix)
# ARGV[3]            - expiry slack in milliseconds
# ARGV[4 + 2(i-1)]   - window width in milliseconds for window i
# ARGV[5 + 2(i-1)]   - limit for window i
#
# Returns {allowed (0/1), count_1, ..., count_n}; counts are taken before
# the current request is recorded.
SLIDING_WINDOW_SCRIPT = """
    local now = tonumber(ARGV[1])
    local member = ARGV[2]
    local slack = tonumber(ARGV[3])

    local allowed = 1
    local result = {0}

    for i = 1, #KEYS do
        local window = tonumber(ARGV[4 + 2 * (i - 1)])
        local limit = tonumber(ARGV[5 + 2 * (i - 1)])

        -- Drop entries at or before the window start
        redis.call('ZREMRANGEBYSCORE', KEYS[i], '-inf', now - window)

        local count = redis.call('ZCARD', KEYS[i])
        result[i + 1] = count
        if count >= limit then
            allowed = 0
        end
    end

    if allowed == 1 then
        for i = 1, #KEYS do
            local window = tonumber(ARGV[4 + 2 * (i - 1)])
            redis.call('ZADD', KEYS[i], now, member)
            redis.call('PEXPIRE', KEYS[i], window + slack)
        end
    end

    result[1] = allowed
    return result
"""
