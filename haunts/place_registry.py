import logging
import threading

import numpy as np
import pandas as pd
import haunts.io.base as loader
from haunts.constants import (ARRIVAL_RADIUS_FACTOR, DEPARTURE_RADIUS_FACTOR, DEFAULT_PLACE_PARAMS,
                              PLACE_SORT_KEYS, USER_CONFIRMED_CONFIDENCE)
from haunts.geocoding import GeocodingQueue
from haunts.models import (Place, PlaceCategory, PlaceCreated, PlaceUpdated, Visit, VisitClosed,
                           VisitOpened)
from haunts.place_attribution import classify
from haunts.stop_detection import utils
from haunts.stop_detection.grid_based import cluster_places
from haunts.stop_detection.stationary import (_is_stationary, extract_stationary_points,
                                              points_from_df, stationary_points)

logger = logging.getLogger(__name__)


def place_from_cluster(cluster, min_place_radius=DEFAULT_PLACE_PARAMS['min_place_radius']):
    """
    Candidate place for a batch cluster.

    Each member stationary point becomes one closed visit; the radius is the
    cluster spread, floored at `min_place_radius`.
    """
    visits = sorted((Visit(p.start_timestamp, p.end_timestamp) for p in cluster.members),
                    key=lambda v: v.arrival_time)
    arrivals = [v.arrival_time for v in visits]
    return Place(latitude=cluster.latitude,
                 longitude=cluster.longitude,
                 radius=max(cluster.spread_radius, min_place_radius),
                 visit_history=visits,
                 created_at=min(arrivals, default=0.0),
                 last_visited_at=max(arrivals, default=0.0))


def place_from_anchor(latitude, longitude, arrival, departure=None,
                      radius=DEFAULT_PLACE_PARAMS['grid_cell_size'],
                      min_place_radius=DEFAULT_PLACE_PARAMS['min_place_radius']):
    """Candidate place for a live stationary anchor, with a single visit starting at the anchor time."""
    return Place(latitude=latitude,
                 longitude=longitude,
                 radius=max(radius, min_place_radius),
                 visit_history=[Visit(arrival, departure)],
                 created_at=arrival,
                 last_visited_at=arrival)


def _same_visit(a, b):
    return a.arrival_time == b.arrival_time and a.departure_time == b.departure_time


class PlaceRegistry:
    """
    Owner of the place collection.

    Places are built two ways: live, from one fix at a time through
    `process_sample`, and in batch, from clustered stationary points through
    `merge_batch`. Both paths produce candidate places that go through the
    same merge step. All mutations happen under a single re-entrant lock.

    Parameters
    ----------
    places : list of Place, optional
        Initial collection. When omitted and a store is given, the store is loaded.
    store : object, optional
        Anything with `load() -> list[Place]` and `save(places)`, such as
        `haunts.io.base.PlaceFileStore`.
    geocoder : callable, optional
        `(latitude, longitude) -> GeocodeResult | None`. Without one, places
        are only named by the user.
    listeners : list of callable, optional
        Receive PlaceCreated, PlaceUpdated, VisitOpened and VisitClosed events.
    tz_offset : int, optional
        Local UTC offset in seconds used when classifying visit times.
    **params
        Overrides for DEFAULT_PLACE_PARAMS.
    """

    def __init__(self, places=None, store=None, geocoder=None, listeners=None, tz_offset=0, **params):
        self.params = loader._parse_params(DEFAULT_PLACE_PARAMS, params)
        if self.params['grid_cell_size'] <= 0:
            raise ValueError(f"grid_cell_size must be positive, got {self.params['grid_cell_size']}.")
        if self.params['min_dwell'] < 0:
            raise ValueError(f"min_dwell cannot be negative, got {self.params['min_dwell']}.")

        self.store = store
        self.tz_offset = tz_offset
        self.listeners = list(listeners or [])
        self.geocoding = None
        if geocoder is not None:
            self.geocoding = GeocodingQueue(geocoder, self.apply_geocode,
                                            min_interval=self.params['geocoding_interval'])

        self._lock = threading.RLock()
        self._places = {}
        self._anchor = None
        self._anchor_count = 0
        self._current_place_id = None
        self._dirty = False

        if places is None and store is not None:
            places = store.load()
        for place in places or []:
            self._places[place.id] = place

    def add_listener(self, listener):
        self.listeners.append(listener)

    def _emit(self, event):
        for listener in self.listeners:
            listener(event)

    # ------------------------------------------------------------------
    # queries

    @property
    def places(self):
        with self._lock:
            return list(self._places.values())

    def __len__(self):
        with self._lock:
            return len(self._places)

    def __contains__(self, place_id):
        with self._lock:
            return place_id in self._places

    def get(self, place_id):
        with self._lock:
            return self._places.get(place_id)

    def _require(self, place_id):
        try:
            return self._places[place_id]
        except KeyError:
            raise KeyError(f"Unknown place id '{place_id}'.") from None

    def find_nearest(self, latitude, longitude, max_distance):
        """Nearest place strictly closer than `max_distance` meters, or None."""
        with self._lock:
            if not self._places:
                return None
            places = list(self._places.values())
            dists = utils.haversine_to_point(np.array([p.latitude for p in places]),
                                             np.array([p.longitude for p in places]),
                                             latitude, longitude)
            i = int(np.argmin(dists))
            return places[i] if dists[i] < max_distance else None

    def is_active(self, place_id):
        with self._lock:
            return self._require(place_id).is_active

    @property
    def current_place(self):
        """Place holding the visit opened by the live stream, if any."""
        with self._lock:
            place = self._places.get(self._current_place_id)
            return place if place is not None and place.is_active else None

    def places_in(self, category):
        category = PlaceCategory(category)
        return [p for p in self.places if p.category == category]

    def sorted_places(self, by="recent"):
        """
        Places ordered by 'recent' (last visit first), 'visits', 'time' (total
        dwell), 'name' (unnamed first) or 'category'.
        """
        if by not in PLACE_SORT_KEYS:
            raise ValueError(f"Unknown sort key '{by}'. Expected one of {PLACE_SORT_KEYS}.")
        places = self.places
        if by == "recent":
            return sorted(places, key=lambda p: p.last_visited_at, reverse=True)
        if by == "visits":
            return sorted(places, key=lambda p: p.visit_count, reverse=True)
        if by == "time":
            return sorted(places, key=lambda p: p.total_dwell_time, reverse=True)
        if by == "name":
            return sorted(places, key=lambda p: p.name or "")
        return sorted(places, key=lambda p: p.category.value)

    def recent_places(self, limit=5):
        return self.sorted_places("recent")[:limit]

    def most_visited_places(self, limit=5):
        return self.sorted_places("visits")[:limit]

    def places_by_category(self):
        """Number of places per category."""
        counts = {}
        for place in self.places:
            counts[place.category] = counts.get(place.category, 0) + 1
        return counts

    @property
    def confirmed_count(self):
        return sum(p.is_confirmed for p in self.places)

    def to_df(self):
        return loader.places_to_df(self.places)

    # ------------------------------------------------------------------
    # merge

    def _reclassify(self, place):
        if place.is_confirmed:
            return
        place.category, place.confidence = classify(place.visit_history, name=place.name,
                                                    tz_offset=self.tz_offset)

    def _insert(self, candidate):
        self._places[candidate.id] = candidate
        if any(not v.is_open for v in candidate.visit_history):
            self._reclassify(candidate)
        logger.info("New place %s at (%.6f, %.6f), radius %.0fm, %d visit(s)",
                    candidate.id, candidate.latitude, candidate.longitude,
                    candidate.radius, candidate.visit_count)
        self._emit(PlaceCreated(candidate))
        if candidate.is_active:
            self._emit(VisitOpened(candidate.id, candidate.current_visit.arrival_time))
        return candidate

    def _merge_candidate(self, candidate, match_distance=None):
        """
        Merge a candidate place into the collection.

        The candidate is matched against the nearest existing place, either
        within `match_distance` meters or, by default, whose centroid is
        closer than the sum of both radii. A match receives the candidate's
        visits that it does not already hold, and its centroid moves to the
        visit-count-weighted average of both centroids. Without a match the
        candidate is inserted as a new place.

        Returns
        -------
        Place
            The place that now holds the candidate's visits.
        """
        if match_distance is not None:
            target = self.find_nearest(candidate.latitude, candidate.longitude, match_distance)
        else:
            target = None
            best = None
            for place in self._places.values():
                d = place.distance_to(candidate.latitude, candidate.longitude)
                if d < place.radius + candidate.radius and (best is None or d < best):
                    target, best = place, d

        if target is None:
            return self._insert(candidate)

        added = []
        for visit in candidate.visit_history:
            if any(_same_visit(visit, v) for v in target.visit_history):
                continue
            if visit.is_open and target.is_active:
                continue
            added.append(Visit(visit.arrival_time, visit.departure_time))
        if not added:
            return target

        # duplicates already held by the target carry no weight
        w_old, w_new = target.visit_count, len(added)
        target.latitude = (target.latitude * w_old + candidate.latitude * w_new) / (w_old + w_new)
        target.longitude = (target.longitude * w_old + candidate.longitude * w_new) / (w_old + w_new)
        # the open visit, if any, stays last
        target.visit_history = sorted(target.visit_history + added,
                                      key=lambda v: (v.is_open, v.arrival_time))
        target.last_visited_at = max(target.last_visited_at, max(v.arrival_time for v in added))
        if any(not v.is_open for v in added):
            self._reclassify(target)

        logger.info("Merged %d visit(s) into place %s", len(added), target.id)
        self._emit(PlaceUpdated(target))
        for visit in added:
            if visit.is_open:
                self._emit(VisitOpened(target.id, visit.arrival_time))
        return target

    def merge_batch(self, clusters):
        """
        Merge clusters from a batch run into the collection.

        Merging the same clusters twice leaves the collection as after the
        first merge: visits already held by the matched place are skipped.

        Parameters
        ----------
        clusters : list of PlaceCluster

        Returns
        -------
        list of Place
            Places created or updated, without duplicates, in cluster order.
        """
        touched = {}
        with self._lock:
            for cluster in clusters:
                candidate = place_from_cluster(cluster, self.params['min_place_radius'])
                place = self._merge_candidate(candidate)
                touched[place.id] = place
        self._autosave()
        return list(touched.values())

    def detect_from_history(self, data, traj_cols=None, **kwargs):
        """
        Rebuild places from a location history.

        Runs stationary point extraction per session, grid clustering and
        `merge_batch`, then queues the unnamed places for geocoding.

        Parameters
        ----------
        data : pd.DataFrame or list of sessions
            A trajectory table (see `stationary_points`) or a list of
            sessions, each a list of LocationSample.
        traj_cols : dict, optional
            Column name overrides for a DataFrame input.

        Returns
        -------
        list of Place
            Places created or updated.
        """
        p = self.params
        if isinstance(data, pd.DataFrame):
            stops = stationary_points(data, max_speed=p['max_speed'], min_dwell=p['min_dwell'],
                                      traj_cols=traj_cols, **kwargs)
            points = points_from_df(stops, traj_cols=traj_cols, **kwargs)
        else:
            points = extract_stationary_points(data, max_speed=p['max_speed'], min_dwell=p['min_dwell'])

        clusters = cluster_places(points,
                                  grid_cell_size=p['grid_cell_size'],
                                  min_visits=p['min_visits'],
                                  min_radius=p['min_radius'])
        logger.info("History: %d stationary points, %d clusters", len(points), len(clusters))

        touched = self.merge_batch(clusters)
        self.rescan_unnamed()
        return touched

    # ------------------------------------------------------------------
    # live stream

    def _anchor_qualifies(self, now):
        _, _, since = self._anchor
        return (now - since >= self.params['min_dwell'] and
                self._anchor_count >= self.params['min_stationary_points'])

    def _clear_anchor(self):
        self._anchor = None
        self._anchor_count = 0

    def _open_visit(self, place, now):
        current = self._places.get(self._current_place_id)
        if current is not None and current is not place and current.is_active:
            self._close_visit(current, now)
        place.record_visit(now)
        self._current_place_id = place.id
        self._dirty = True
        logger.info("Arrived at %s (%s)", place.display_name, place.id)
        self._emit(VisitOpened(place.id, now))
        self._emit(PlaceUpdated(place))

    def _close_visit(self, place, now):
        visit = place.end_current_visit(now)
        if visit is None:
            return
        self._dirty = True
        self._reclassify(place)
        logger.info("Left %s (%s) after %ds", place.display_name, place.id, visit.dwell_time())
        self._emit(VisitClosed(place.id, visit.arrival_time, visit.departure_time))
        self._emit(PlaceUpdated(place))

    def _materialize(self, now, departure=None):
        lat, lon, since = self._anchor
        self._clear_anchor()
        cell = self.params['grid_cell_size']
        candidate = place_from_anchor(lat, lon, since, departure, radius=cell,
                                      min_place_radius=self.params['min_place_radius'])

        current = self._places.get(self._current_place_id)
        if departure is None and current is not None and current.is_active:
            self._close_visit(current, now)

        place = self._merge_candidate(candidate, match_distance=cell)
        self._dirty = True
        if place.is_active:
            self._current_place_id = place.id
        self._request_geocode(place)
        return place

    def process_sample(self, sample, timestamp=None):
        """
        Feed one fix of the live stream.

        A stationary fix near a known place opens a visit there unless one
        is already open. Elsewhere, stationary fixes accumulate around a
        pending anchor until they have lasted `min_dwell` seconds and
        numbered `min_stationary_points`, at which point a new place is
        created with a visit starting at the anchor time. A moving fix closes
        the open visit at the nearby place and at the place last arrived at,
        creates the pending place if it already qualifies, and clears the
        anchor. When a store is configured, every fix that creates a place
        or opens or closes a visit is followed by a save.

        Parameters
        ----------
        sample : LocationSample
        timestamp : float, optional
            Processing time in UNIX seconds. Defaults to the sample timestamp.

        Returns
        -------
        Place or None
            The place the user is currently at, if any.
        """
        now = sample.timestamp if timestamp is None else timestamp
        with self._lock:
            self._dirty = False
            place = self._track(sample, now)
            dirty, self._dirty = self._dirty, False
        if dirty:
            self._autosave()
        return place

    def _track(self, sample, now):
        cell = self.params['grid_cell_size']
        if _is_stationary(sample.speed, self.params['max_speed']):
            place = self.find_nearest(sample.latitude, sample.longitude, cell * ARRIVAL_RADIUS_FACTOR)
            if place is not None:
                self._clear_anchor()
                if not place.is_active:
                    self._open_visit(place, now)
                self._current_place_id = place.id
                return place

            if self._anchor is None:
                self._anchor = (sample.latitude, sample.longitude, now)
                self._anchor_count = 1
            elif utils.haversine(sample.latitude, sample.longitude, *self._anchor[:2]) < cell:
                self._anchor_count += 1
                if self._anchor_qualifies(now):
                    return self._materialize(now)
            else:
                self._anchor = (sample.latitude, sample.longitude, now)
                self._anchor_count = 1
            return self.current_place

        nearby = self.find_nearest(sample.latitude, sample.longitude, cell * DEPARTURE_RADIUS_FACTOR)
        for place in (nearby, self._places.get(self._current_place_id)):
            if place is not None and place.is_active:
                self._close_visit(place, now)
        self._current_place_id = None

        if self._anchor is not None and self._anchor_qualifies(now):
            self._materialize(now, departure=now)
        self._clear_anchor()
        return None

    def reset_tracking_state(self):
        """Forget the pending anchor and the current place, e.g. when tracking stops."""
        with self._lock:
            self._clear_anchor()
            self._current_place_id = None

    # ------------------------------------------------------------------
    # user overrides and naming

    def override_name(self, place_id, name):
        with self._lock:
            place = self._require(place_id)
            place.name = name
            place.is_confirmed = True
            self._emit(PlaceUpdated(place))
        self._autosave()
        return place

    def override_category(self, place_id, category):
        with self._lock:
            place = self._require(place_id)
            place.category = PlaceCategory(category)
            place.confidence = USER_CONFIRMED_CONFIDENCE
            place.is_confirmed = True
            self._emit(PlaceUpdated(place))
        self._autosave()
        return place

    def apply_geocode(self, place_id, result):
        """
        Store a reverse geocoding result on a place and re-classify it with
        the new name. Places removed in the meantime are ignored.
        """
        with self._lock:
            place = self._places.get(place_id)
            if place is None:
                logger.debug("Dropping geocoding result for removed place %s", place_id)
                return None
            if result.name is not None and not place.is_confirmed:
                place.name = result.name
            if result.street_address:
                place.street_address = result.street_address
            self._reclassify(place)
            self._emit(PlaceUpdated(place))
            return place

    def _request_geocode(self, place):
        if self.geocoding is None or place.name is not None or place.is_confirmed:
            return False
        return self.geocoding.enqueue(place.id, place.latitude, place.longitude)

    def rescan_unnamed(self):
        """Queue every unnamed, unconfirmed place for geocoding. Returns the number queued."""
        return sum(self._request_geocode(p) for p in self.places)

    # ------------------------------------------------------------------
    # persistence

    def _autosave(self):
        if self.store is not None:
            self.save()

    def save(self):
        if self.store is None:
            raise ValueError("No store configured for this registry.")
        with self._lock:
            self.store.save(list(self._places.values()))

    def load(self):
        """Replace the collection with the store's content."""
        if self.store is None:
            raise ValueError("No store configured for this registry.")
        places = self.store.load()
        with self._lock:
            self._places = {p.id: p for p in places}
            self.reset_tracking_state()
        return self.places

    def clear(self):
        with self._lock:
            self._places.clear()
            self.reset_tracking_state()
            if self.geocoding is not None:
                self.geocoding.clear()
        self._autosave()
