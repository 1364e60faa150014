import logging
import time
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd
import haunts.io.base as loader
from haunts.constants import DEFAULT_FREQUENCY_TIERS, DEFAULT_SAMPLER_PARAMS, EMISSION_SLACK
from haunts.models import (FixAccepted, FixRejected, FrequencyTier, MovementResumed,
                           ReducedModeEntered, TierChanged)
from haunts.stop_detection.utils import haversine

logger = logging.getLogger(__name__)


def _validate_tiers(tiers):
    """
    Normalize a tier list to FrequencyTier objects and check its invariants.

    Raises ValueError when the list is empty, when the first tier is not
    (0 s, 1x), when durations are not strictly increasing or when multipliers
    decrease.
    """
    tiers = [t if isinstance(t, FrequencyTier) else FrequencyTier(*t) for t in tiers]
    if not tiers:
        raise ValueError("The frequency tier list cannot be empty.")
    if tiers[0].min_stationary_duration != 0 or tiers[0].multiplier != 1:
        raise ValueError(
            f"The first frequency tier must be (0, 1.0), got "
            f"({tiers[0].min_stationary_duration}, {tiers[0].multiplier}).")
    for prev, cur in zip(tiers, tiers[1:]):
        if cur.min_stationary_duration <= prev.min_stationary_duration:
            raise ValueError(
                f"Tier durations must be strictly increasing: '{prev.label}' "
                f"({prev.min_stationary_duration}s) then '{cur.label}' ({cur.min_stationary_duration}s).")
        if cur.multiplier < prev.multiplier:
            raise ValueError(
                f"Tier multipliers must be non-decreasing: '{prev.label}' "
                f"({prev.multiplier}x) then '{cur.label}' ({cur.multiplier}x).")
    return tuple(tiers)


@dataclass
class SamplerState:
    tier_index: int = 0
    stationary_since: Optional[float] = None
    last_significant_location: Optional[Tuple[float, float]] = None
    last_emitted_at: Optional[float] = None
    in_reduced_mode: bool = False
    notified_reduced: bool = False


@dataclass(frozen=True)
class TickDecision:
    emitted: bool
    next_interval: float
    tier: FrequencyTier
    events: tuple


class AdaptiveSampler:
    """
    Throttles location sampling based on how long the user has been still.

    Each tick looks at the best known fix, decides whether to forward it and
    returns the delay until the next tick. While successive fixes stay within
    `movement_threshold` meters of the last significant location, the
    sampler climbs the frequency tiers and the interval stretches to
    `base_interval * tier.multiplier`. Any larger displacement drops it back
    to the first tier.

    Every decision is also published as an event object to the registered
    listeners, in the order it happened.

    Attributes
    ----------
    base_interval : float
        Seconds between ticks in the first tier.
    min_accuracy : float
        Fixes with a horizontal accuracy worse than this (meters) are not emitted.
    movement_threshold : float
        Displacement in meters that counts as movement.
    tiers : tuple of FrequencyTier
    smart_tracking : bool
        When False, the sampler stays on the first tier.
    state : SamplerState
    """

    def __init__(self,
                 base_interval=DEFAULT_SAMPLER_PARAMS['base_interval'],
                 min_accuracy=DEFAULT_SAMPLER_PARAMS['min_accuracy'],
                 movement_threshold=DEFAULT_SAMPLER_PARAMS['movement_threshold'],
                 tiers=DEFAULT_FREQUENCY_TIERS,
                 smart_tracking=DEFAULT_SAMPLER_PARAMS['smart_tracking'],
                 listeners=None):
        if not base_interval > 0:
            raise ValueError(f"base_interval must be positive, got {base_interval}.")
        if movement_threshold < 0:
            raise ValueError(f"movement_threshold cannot be negative, got {movement_threshold}.")
        self.base_interval = float(base_interval)
        self.min_accuracy = float(min_accuracy)
        self.movement_threshold = float(movement_threshold)
        self.tiers = _validate_tiers(tiers)
        self.smart_tracking = smart_tracking
        self.listeners = list(listeners or [])
        self.state = SamplerState()

    @property
    def current_tier(self):
        return self.tiers[self.state.tier_index]

    @property
    def next_interval(self):
        return self.base_interval * self.current_tier.multiplier

    def add_listener(self, listener):
        self.listeners.append(listener)

    def start(self, now=None):
        """Reset to the first tier. Called whenever sampling (re)starts."""
        self.state = SamplerState()
        logger.debug("Sampler started at %s with base interval %.0fs", now, self.base_interval)

    def select_tier(self, elapsed):
        """Index of the highest tier whose minimum stationary duration is <= `elapsed`."""
        index = 0
        for i, tier in enumerate(self.tiers):
            if tier.min_stationary_duration <= elapsed:
                index = i
        return index

    def on_tick(self, fix, now=None):
        """
        Run one scheduled tick.

        Parameters
        ----------
        fix : LocationSample or None
            Latest fix known to the location service.
        now : float, optional
            Tick time in UNIX seconds. Defaults to the fix timestamp.

        Returns
        -------
        TickDecision
            Whether the fix was emitted, the delay before the next tick, the
            tier in force and the events produced by this tick.
        """
        if now is None:
            if fix is None:
                raise ValueError("A tick without a fix needs an explicit `now`.")
            now = fix.timestamp
        events = []
        state = self.state

        if fix is None or not fix.accuracy <= self.min_accuracy:
            reason = "no fix" if fix is None else f"accuracy {fix.accuracy:.0f}m > {self.min_accuracy:.0f}m"
            events.append(FixRejected(fix=fix, reason=reason, timestamp=now))
            # the stationary clock keeps running, but an unusable position never moves the anchor
            if self.smart_tracking and state.stationary_since is not None:
                self._escalate(now, events)
            return self._finish(False, events)

        if self.smart_tracking:
            self._check_movement(fix, now, events)

        tier = self.current_tier
        due = (state.last_emitted_at is None or
               now - state.last_emitted_at >= self.base_interval * tier.multiplier * EMISSION_SLACK)
        if due:
            state.last_emitted_at = now
            events.append(FixAccepted(fix=fix, tier=tier, timestamp=now))
        return self._finish(due, events)

    def _check_movement(self, fix, now, events):
        state = self.state
        if state.last_significant_location is None:
            self._movement_detected(fix, now, events)
            return

        distance = haversine(fix.latitude, fix.longitude, *state.last_significant_location)
        if distance > self.movement_threshold:
            self._movement_detected(fix, now, events)
        else:
            if state.stationary_since is None:
                state.stationary_since = now
            self._escalate(now, events)

    def _movement_detected(self, fix, now, events):
        state = self.state
        previous = self.current_tier
        was_reduced = state.in_reduced_mode

        state.last_significant_location = fix.coordinate
        state.stationary_since = None
        state.tier_index = 0
        state.in_reduced_mode = False

        if previous is not self.tiers[0]:
            events.append(TierChanged(previous=previous, current=self.tiers[0], timestamp=now))
        if was_reduced:
            logger.info("Movement detected, resuming %s sampling", self.tiers[0].label)
            events.append(MovementResumed(label=self.tiers[0].label, previous_label=previous.label,
                                          timestamp=now))
            state.notified_reduced = False

    def _escalate(self, now, events):
        state = self.state
        elapsed = now - state.stationary_since
        new_index = self.select_tier(elapsed)
        if new_index <= state.tier_index:
            return

        previous = self.current_tier
        state.tier_index = new_index
        tier = self.current_tier
        events.append(TierChanged(previous=previous, current=tier, timestamp=now))
        logger.info("Stationary for %ds, reducing frequency: %s -> %s (%gx)",
                    elapsed, previous.label, tier.label, tier.multiplier)

        if not state.in_reduced_mode:
            state.in_reduced_mode = True
            if not state.notified_reduced:
                events.append(ReducedModeEntered(label=tier.label, timestamp=now))
                state.notified_reduced = True

    def _finish(self, emitted, events):
        decision = TickDecision(emitted=emitted,
                                next_interval=self.next_interval,
                                tier=self.current_tier,
                                events=tuple(events))
        for event in decision.events:
            for listener in self.listeners:
                listener(event)
        logger.debug("Scheduled next tick in %ds (tier: %s, %gx)",
                     decision.next_interval, decision.tier.label, decision.tier.multiplier)
        return decision

    def run(self, get_fix, stop_event, clock=time.time):
        """
        Drive the sampler from a timer until `stop_event` is set.

        Parameters
        ----------
        get_fix : callable
            Returns the latest LocationSample (or None) when called.
        stop_event : threading.Event
            Stops the loop; also interrupts the wait between ticks.
        clock : callable, optional
            Returns the current UNIX time in seconds.
        """
        self.start(clock())
        while not stop_event.is_set():
            decision = self.on_tick(get_fix(), now=clock())
            if stop_event.wait(decision.next_interval):
                break


def sample_adaptive(traj,
                    base_interval=DEFAULT_SAMPLER_PARAMS['base_interval'],
                    min_accuracy=DEFAULT_SAMPLER_PARAMS['min_accuracy'],
                    movement_threshold=DEFAULT_SAMPLER_PARAMS['movement_threshold'],
                    tiers=DEFAULT_FREQUENCY_TIERS,
                    smart_tracking=DEFAULT_SAMPLER_PARAMS['smart_tracking'],
                    traj_cols=None,
                    **kwargs):
    """
    Thin a dense trajectory the way the adaptive sampler would have sampled it.

    Ticks are scheduled from the first fix of each session; every tick sees
    the latest fix at or before the tick time, and the interval to the next
    tick follows the sampler's tier.

    Parameters
    ----------
    traj : pd.DataFrame
        Dense trajectory with latitude, longitude and timestamp (or datetime)
        columns, optionally `ha` (accuracy) and `session_id`.
    base_interval, min_accuracy, movement_threshold, tiers, smart_tracking
        Passed to AdaptiveSampler.
    traj_cols : dict, optional
        Column name overrides.

    Returns
    -------
    pd.DataFrame
        The emitted rows of `traj`, with the `tier` label and `multiplier`
        in force when each was emitted. A row is kept once even if several
        ticks re-emitted it.
    """
    if not isinstance(traj, pd.DataFrame):
        raise TypeError("Input 'traj' must be a pandas DataFrame or GeoDataFrame.")
    if traj.empty:
        return traj.assign(tier=pd.Series(dtype=object), multiplier=pd.Series(dtype=float))

    data = loader.from_df(traj, traj_cols=traj_cols, require_speed=False, **kwargs)
    traj_cols = loader._parse_traj_cols(data.columns, traj_cols, kwargs, warn=False)

    emitted, labels, multipliers = [], [], []
    for _, group in loader._session_groups(data, traj_cols):
        ts = group[traj_cols['timestamp']].to_numpy()
        samples = loader.samples_from_df(group, traj_cols=traj_cols)
        sampler = AdaptiveSampler(base_interval=base_interval,
                                  min_accuracy=min_accuracy,
                                  movement_threshold=movement_threshold,
                                  tiers=tiers,
                                  smart_tracking=smart_tracking)
        t = ts[0]
        sampler.start(t)
        while t <= ts[-1]:
            i = int(np.searchsorted(ts, t, side='right')) - 1
            decision = sampler.on_tick(samples[i], now=t)
            if decision.emitted:
                emitted.append(group.index[i])
                labels.append(decision.tier.label)
                multipliers.append(decision.tier.multiplier)
            t += decision.next_interval

    out = data.loc[emitted].assign(tier=labels, multiplier=multipliers)
    return out[~out.index.duplicated(keep='first')]
