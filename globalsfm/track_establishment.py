"""Building point tracks from pairwise feature matches and selecting tracks for optimisation."""

from __future__ import annotations

import logging
import math
from typing import Hashable, Mapping

import numpy as np

from globalsfm.options import TrackEstablishmentOptions
from globalsfm.sfm import Image, Track, ViewGraph

logger = logging.getLogger(__name__)

_FEATURE_MASK = 0xFFFFFFFF


class UnionFind:
    """Disjoint sets over hashable elements, created on first use."""

    def __init__(self) -> None:
        self._parent: dict[Hashable, Hashable] = {}

    def find(self, x):
        """Return the representative of the set holding ``x``."""
        parent = self._parent
        root = parent.setdefault(x, x)
        while parent[root] != root:
            root = parent[root]
        node = x
        while parent[node] != root:
            parent[node], node = root, parent[node]
        return root

    def union(self, x, y) -> None:
        """Merge the sets of ``x`` and ``y``; the root of ``y`` becomes the new root."""
        root_x = self.find(x)
        root_y = self.find(y)
        if root_x != root_y:
            self._parent[root_x] = root_y

    def clear(self) -> None:
        """Forget every element."""
        self._parent.clear()


def _global_id(image_id: int, feature_id: int) -> int:
    return (int(image_id) << 32) | int(feature_id)


class TrackEngine:
    """Concatenates matches into tracks and picks a subset of them for a problem."""

    def __init__(
        self,
        view_graph: ViewGraph,
        images: Mapping[int, Image],
        options: TrackEstablishmentOptions,
    ) -> None:
        self.view_graph = view_graph
        self.images = images
        self.options = options
        self._uf = UnionFind()

    def _inlier_correspondences(self):
        for pair in self.view_graph.image_pairs.values():
            if not pair.is_valid:
                continue
            for idx in pair.inliers:
                point1_idx, point2_idx = pair.matches[idx]
                yield (
                    _global_id(pair.image_id1, point1_idx),
                    _global_id(pair.image_id2, point2_idx),
                )

    def establish_full_tracks(self) -> dict[int, Track]:
        """Build every track from the valid pairs; inconsistent tracks keep no observations."""
        self._uf.clear()
        for id1, id2 in self._inlier_correspondences():
            # Link towards the smaller id so it tends to become the root.
            if id2 < id1:
                self._uf.union(id1, id2)
            else:
                self._uf.union(id2, id1)
        return self._collect_tracks()

    def _collect_tracks(self) -> dict[int, Track]:
        track_map: dict[int, set[int]] = {}
        for id1, id2 in self._inlier_correspondences():
            members = track_map.setdefault(self._uf.find(id1), set())
            members.add(id1)
            members.add(id2)

        tracks: dict[int, Track] = {}
        discarded = 0
        for track_id, correspondences in track_map.items():
            track = tracks.setdefault(track_id, Track(track_id=track_id))
            seen: dict[int, list[np.ndarray]] = {}
            for gid in sorted(correspondences):
                image_id = gid >> 32
                feature_id = gid & _FEATURE_MASK
                feature = self.images[image_id].features[feature_id]
                if image_id in seen:
                    if any(
                        np.linalg.norm(other - feature) > self.options.thres_inconsistency
                        for other in seen[image_id]
                    ):
                        track.observations.clear()
                    if not track.observations:
                        discarded += 1
                        break
                seen.setdefault(image_id, []).append(feature)
                track.observations.append((image_id, feature_id))

        logger.info("Discarded %d tracks due to inconsistency", discarded)
        return tracks

    def find_tracks_for_problem(self, tracks_full: Mapping[int, Track]) -> dict[int, Track]:
        """Select long tracks over registered images until every image has enough of them."""
        opts = self.options
        track_lengths = sorted(
            (
                (len(track.observations), track_id)
                for track_id, track in tracks_full.items()
                if opts.min_num_view_per_track
                <= len(track.observations)
                <= opts.max_num_view_per_track
            ),
            reverse=True,
        )

        # A negative minimum means no per-image cap.
        per_view_limit = (
            math.inf if opts.min_num_tracks_per_view < 0 else opts.min_num_tracks_per_view
        )
        tracks_per_camera = {
            image_id: 0 for image_id, image in self.images.items() if image.is_registered
        }
        cameras_left = len(tracks_per_camera)

        selected: dict[int, Track] = {}
        for _, track_id in track_lengths:
            observations = [
                (image_id, feature_id)
                for image_id, feature_id in tracks_full[track_id].observations
                if image_id in tracks_per_camera
            ]
            if len({image_id for image_id, _ in observations}) < opts.min_num_view_per_track:
                continue

            for image_id, _ in observations:
                if tracks_per_camera[image_id] > per_view_limit:
                    continue
                tracks_per_camera[image_id] += 1
                if tracks_per_camera[image_id] > per_view_limit:
                    cameras_left -= 1
                if track_id not in selected:
                    selected[track_id] = Track(
                        track_id=track_id,
                        xyz=tracks_full[track_id].xyz,
                        is_initialized=tracks_full[track_id].is_initialized,
                        observations=list(observations),
                    )

            if cameras_left == 0:
                break
            if len(selected) > opts.max_num_tracks:
                break

        return selected