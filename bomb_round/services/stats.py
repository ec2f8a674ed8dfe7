from typing import List

import numpy as np

from bomb_round.domain.round_rules import SessionStatus
from bomb_round.models.dc_models import StatsResponse
from bomb_round.models.schema_models import GameSessionSchema


def payout_wei(wager_wei: int, multiplier: float) -> int:
    """Payout of a won round, with the multiplier truncated to two decimals."""
    return wager_wei * int(np.floor(multiplier * 100)) // 100


def win_streaks(statuses: List[SessionStatus]) -> tuple[int, int]:
    """Longest and current run of completed rounds. Only losses break a run."""
    longest = current = 0
    for status in statuses:
        if status == SessionStatus.completed:
            current += 1
            longest = max(longest, current)
        elif status == SessionStatus.lost:
            current = 0
    return longest, current


def summarize_sessions(sessions: List[GameSessionSchema]) -> StatsResponse:
    """Aggregate finalized sessions of one player, oldest first

    Args:
        sessions (List[GameSessionSchema]): Sessions with ``finalized_at`` set

    Returns:
        StatsResponse: Counts, wei totals as decimal strings and multiplier aggregates
    """
    games_played = len(sessions)
    if games_played == 0:
        return StatsResponse(
            games_played=0,
            games_won=0,
            games_lost=0,
            win_rate=0.0,
            total_wagered_wei="0",
            total_payout_wei="0",
            net_profit_wei="0",
            highest_payout_wei="0",
            max_multiplier=0.0,
            avg_multiplier=0.0,
            longest_streak=0,
            current_streak=0,
        )

    statuses = [session.status for session in sessions]
    multipliers = np.array([session.current_multiplier for session in sessions], dtype=np.float64)
    # wei amounts overflow int64, keep them as python ints
    wagers = [int(session.wager_wei) if session.wager_wei else 0 for session in sessions]
    payouts = [
        payout_wei(wager, session.current_multiplier)
        for wager, session in zip(wagers, sessions)
        if session.status == SessionStatus.completed
    ]

    games_won = statuses.count(SessionStatus.completed)
    games_lost = statuses.count(SessionStatus.lost)
    total_wagered = sum(wagers)
    total_payout = sum(payouts)
    longest_streak, current_streak = win_streaks(statuses)

    return StatsResponse(
        games_played=games_played,
        games_won=games_won,
        games_lost=games_lost,
        win_rate=round(games_won / games_played * 100, 2),
        total_wagered_wei=str(total_wagered),
        total_payout_wei=str(total_payout),
        net_profit_wei=str(total_payout - total_wagered),
        highest_payout_wei=str(max(payouts, default=0)),
        max_multiplier=round(float(np.max(multipliers)), 2),
        avg_multiplier=round(float(np.mean(multipliers)), 2),
        longest_streak=longest_streak,
        current_streak=current_streak,
    )
