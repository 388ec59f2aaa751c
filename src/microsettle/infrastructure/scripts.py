"""Central registry for Redis Lua scripts used across the application.

Scripts are registered at application startup for EVALSHA. Each one guards
an invariant that spans several keys and must hold under concurrent
requests and across workers.

Return Code Conventions:
    Scripts return ``{code, value}``:

    - 0: Rejected/no-op - The state did not allow the write. The second
         element is the current value for reference (or the idempotency key
         when the write had already happened).

    - 1: Success saved - The write happened. The second element is the
         saved value.

    - 2: Not found - A key the operation depends on does not exist. The
         second element names what is missing, or is empty.

    - 3: Conflict - A dependent record is owned by another operation (e.g.
         a voucher already settled by a different transaction). The second
         element names the conflicting record.
"""

FACILITATOR_SCRIPTS = {
    # KEYS[1] authorization key
    # ARGV[1] record JSON, ARGV[2] ttl seconds
    "record_authorization_verified": """
        local auth_key = KEYS[1]
        local current_raw = redis.call('GET', auth_key)
        if current_raw then
            local state = cjson.decode(current_raw).state
            if state ~= 'verified' and state ~= 'settlement_failed' then
                return {0, current_raw}
            end
        end
        redis.call('SET', auth_key, ARGV[1], 'EX', tonumber(ARGV[2]))
        return {1, ARGV[1]}
    """,
    # KEYS[1] authorization key, KEYS[2] (optional) tx hash index key
    # ARGV[1] new record JSON, ARGV[2] comma separated expected states,
    # ARGV[3] ttl seconds for the tx hash index
    "transition_authorization": """
        local auth_key = KEYS[1]
        local current_raw = redis.call('GET', auth_key)
        if not current_raw then
            return {2, ''}
        end

        local state = cjson.decode(current_raw).state
        local allowed = false
        for expected in string.gmatch(ARGV[2], '[^,]+') do
            if expected == state then
                allowed = true
            end
        end
        if not allowed then
            return {0, current_raw}
        end

        redis.call('SET', auth_key, ARGV[1], 'KEEPTTL')
        if KEYS[2] then
            redis.call('SET', KEYS[2], auth_key, 'EX', tonumber(ARGV[3]))
        end
        return {1, ARGV[1]}
    """,
    # KEYS[1] nonce key, KEYS[2] voucher key, KEYS[3] payee unsettled zset,
    # KEYS[4] unsettled expiry zset
    # ARGV[1] voucher JSON, ARGV[2] voucher id, ARGV[3] created ts,
    # ARGV[4] valid_until
    "store_voucher": """
        local existing = redis.call('GET', KEYS[1])
        if existing then
            return {0, existing}
        end
        redis.call('SET', KEYS[1], ARGV[2])
        redis.call('SET', KEYS[2], ARGV[1])
        redis.call('ZADD', KEYS[3], ARGV[3], ARGV[2])
        redis.call('ZADD', KEYS[4], ARGV[4], ARGV[2])
        return {1, ARGV[1]}
    """,
    # KEYS[1] settlement key, KEYS[2] payee settlements zset,
    # KEYS[3] payee unsettled zset, KEYS[4] unsettled expiry zset,
    # KEYS[5..n] voucher keys
    # ARGV[1] settlement JSON, ARGV[2] tx hash, ARGV[3] settled ts,
    # ARGV[4..n-1] voucher ids aligned with KEYS[5..n]
    "finalize_settlement": """
        local tx_hash = ARGV[2]
        if redis.call('EXISTS', KEYS[1]) == 1 then
            return {0, tx_hash}
        end

        local vouchers = {}
        for i = 5, #KEYS do
            local raw = redis.call('GET', KEYS[i])
            if not raw then
                return {2, ARGV[i - 1]}
            end
            local voucher = cjson.decode(raw)
            if voucher.settled and voucher.settlement_tx_hash ~= tx_hash then
                return {3, ARGV[i - 1]}
            end
            vouchers[i] = voucher
        end

        for i = 5, #KEYS do
            local voucher = vouchers[i]
            voucher.settled = true
            voucher.settlement_tx_hash = tx_hash
            redis.call('SET', KEYS[i], cjson.encode(voucher))
            redis.call('ZREM', KEYS[3], ARGV[i - 1])
            redis.call('ZREM', KEYS[4], ARGV[i - 1])
        end

        redis.call('SET', KEYS[1], ARGV[1])
        redis.call('ZADD', KEYS[2], ARGV[3], tx_hash)
        return {1, tx_hash}
    """,
    # KEYS[1] voucher key, KEYS[2] nonce key, KEYS[3] payee unsettled zset,
    # KEYS[4] unsettled expiry zset, KEYS[5] pinned voucher ids set
    # ARGV[1] voucher id, ARGV[2] now
    "delete_expired_voucher": """
        local raw = redis.call('GET', KEYS[1])
        if not raw then
            redis.call('ZREM', KEYS[4], ARGV[1])
            return {2, ''}
        end
        local voucher = cjson.decode(raw)
        if voucher.settled or tonumber(voucher.valid_until) > tonumber(ARGV[2]) then
            return {0, raw}
        end
        -- Pinned to a settlement that may still land on chain
        if redis.call('SISMEMBER', KEYS[5], ARGV[1]) == 1 then
            return {3, ARGV[1]}
        end
        redis.call('DEL', KEYS[1])
        redis.call('DEL', KEYS[2])
        redis.call('ZREM', KEYS[3], ARGV[1])
        redis.call('ZREM', KEYS[4], ARGV[1])
        return {1, ARGV[1]}
    """,
    # KEYS[1] intent key, KEYS[2] pending intents zset,
    # KEYS[3] pinned voucher ids set
    # ARGV[1] intent JSON, ARGV[2] created ts
    "save_settlement_intent": """
        local current_raw = redis.call('GET', KEYS[1])
        if current_raw then
            return {0, current_raw}
        end
        redis.call('SET', KEYS[1], ARGV[1])
        redis.call('ZADD', KEYS[2], ARGV[2], KEYS[1])
        for _, voucher_id in ipairs(cjson.decode(ARGV[1]).voucher_ids) do
            redis.call('SADD', KEYS[3], voucher_id)
        end
        return {1, ARGV[1]}
    """,
    # KEYS[1] intent key, KEYS[2] pending intents zset,
    # KEYS[3] pinned voucher ids set
    # ARGV[1] nonce the caller pinned
    "clear_settlement_intent": """
        local current_raw = redis.call('GET', KEYS[1])
        if not current_raw then
            redis.call('ZREM', KEYS[2], KEYS[1])
            return {2, ''}
        end
        local intent = cjson.decode(current_raw)
        if intent.nonce ~= ARGV[1] then
            return {0, current_raw}
        end
        for _, voucher_id in ipairs(intent.voucher_ids) do
            redis.call('SREM', KEYS[3], voucher_id)
        end
        redis.call('DEL', KEYS[1])
        redis.call('ZREM', KEYS[2], KEYS[1])
        return {1, ''}
    """,
    # KEYS[1] nullifier key, KEYS[2] scope zset, KEYS[3] expiry zset
    # ARGV[1] record JSON, ARGV[2] now ts, ARGV[3] created ts,
    # ARGV[4] expires ts, ARGV[5] nullifier
    "store_nullifier": """
        local current_raw = redis.call('GET', KEYS[1])
        if current_raw then
            local expires = redis.call('ZSCORE', KEYS[3], KEYS[1])
            if not expires or tonumber(expires) > tonumber(ARGV[2]) then
                return {0, current_raw}
            end
        end
        redis.call('SET', KEYS[1], ARGV[1])
        redis.call('ZADD', KEYS[2], ARGV[3], ARGV[5])
        redis.call('ZADD', KEYS[3], ARGV[4], KEYS[1])
        return {1, ARGV[1]}
    """,
    # KEYS[1] nullifier key, KEYS[2] scope zset, KEYS[3] expiry zset
    # ARGV[1] now ts, ARGV[2] nullifier
    "delete_expired_nullifier": """
        local expires = redis.call('ZSCORE', KEYS[3], KEYS[1])
        if expires and tonumber(expires) > tonumber(ARGV[1]) then
            return {0, ''}
        end
        redis.call('DEL', KEYS[1])
        redis.call('ZREM', KEYS[2], ARGV[2])
        redis.call('ZREM', KEYS[3], KEYS[1])
        return {1, ARGV[2]}
    """,
}
