"""Match lifecycle: waiting -> ready -> countdown -> signal -> completed | cancelled.

The store never moves a match by read-modify-write. Each transition is a
conditional UPDATE whose WHERE clause lists the statuses it may leave from;
zero affected rows means another writer got there first.
"""

WAITING = 'waiting'
READY = 'ready'
COUNTDOWN = 'countdown'
SIGNAL = 'signal'
COMPLETED = 'completed'
CANCELLED = 'cancelled'

ACTIVE_STATES = (WAITING, READY, COUNTDOWN, SIGNAL)
TERMINAL_STATES = (COMPLETED, CANCELLED)

FORWARD = {
    WAITING: READY,
    READY: COUNTDOWN,
    COUNTDOWN: SIGNAL,
}

TRANSITIONS = {
    WAITING: {READY, COMPLETED, CANCELLED},
    READY: {COUNTDOWN, COMPLETED, CANCELLED},
    COUNTDOWN: {SIGNAL, COMPLETED, CANCELLED},
    SIGNAL: {COMPLETED, CANCELLED},
    COMPLETED: set(),
    CANCELLED: set(),
}

CANCELLATION_REASONS = {
    'both_players_disconnect',
    'opponent_disconnect',
    'matchmaking_timeout',
    'no_match_found',
}


class InvalidTransition(Exception):
    def __init__(self, match_id, current, target, reason=''):
        message = f'Invalid transition for match {match_id}: {current} -> {target}'
        if reason:
            message = f'{message}. {reason}'
        super().__init__(message)
        self.match_id = match_id
        self.current = current
        self.target = target


def is_active(status):
    return status in ACTIVE_STATES


def is_terminal(status):
    return status in TERMINAL_STATES


def can_transition(current, target):
    return target in TRANSITIONS.get(current, set())


def sources_for(target):
    """Statuses a match may be in for a guarded move to ``target``."""
    return tuple(sorted(state for state, targets in TRANSITIONS.items() if target in targets))
