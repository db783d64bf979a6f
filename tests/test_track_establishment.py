import numpy as np
import pytest

from globalsfm.options import TrackEstablishmentOptions
from globalsfm.sfm import Image, ImagePair, Track, ViewGraph
from globalsfm.track_establishment import TrackEngine, UnionFind


def _image(image_id, features, registered=True):
    return Image(
        image_id=image_id,
        camera_id=1,
        features=np.asarray(features, dtype=float),
        is_registered=registered,
    )


def _pair(id1, id2, matches, valid=True):
    matches = np.asarray(matches, dtype=int)
    return ImagePair(
        image_id1=id1,
        image_id2=id2,
        matches=matches,
        inliers=list(range(len(matches))),
        is_valid=valid,
    )


def _graph(*pairs):
    return ViewGraph(image_pairs={p.pair_id: p for p in pairs})


def _non_empty(tracks):
    return {tid: t for tid, t in tracks.items() if t.observations}


def test_union_find_merges_and_roots():
    uf = UnionFind()
    uf.union(5, 3)
    uf.union(7, 5)
    assert uf.find(7) == uf.find(3) == 3
    assert uf.find(9) == 9
    uf.clear()
    assert uf.find(7) == 7


def test_union_find_transitive():
    uf = UnionFind()
    uf.union("a", "b")
    uf.union("c", "d")
    assert uf.find("a") != uf.find("c")
    uf.union("b", "c")
    assert uf.find("a") == uf.find("d")


def test_chain_forms_single_track():
    images = {
        1: _image(1, [[0, 0], [5, 5]]),
        2: _image(2, [[1, 1]]),
        3: _image(3, [[2, 2]]),
    }
    graph = _graph(_pair(1, 2, [[0, 0]]), _pair(2, 3, [[0, 0]]))
    tracks = TrackEngine(graph, images, TrackEstablishmentOptions()).establish_full_tracks()
    assert len(tracks) == 1
    (track_id, track), = tracks.items()
    assert track.track_id == track_id
    assert sorted(track.observations) == [(1, 0), (2, 0), (3, 0)]


def test_invalid_pairs_are_ignored():
    images = {1: _image(1, [[0, 0]]), 2: _image(2, [[1, 1]]), 3: _image(3, [[2, 2]])}
    graph = _graph(_pair(1, 2, [[0, 0]]), _pair(2, 3, [[0, 0]], valid=False))
    tracks = TrackEngine(graph, images, TrackEstablishmentOptions()).establish_full_tracks()
    assert [sorted(t.observations) for t in tracks.values()] == [[(1, 0), (2, 0)]]


def test_inconsistent_track_is_emptied():
    # features 0 and 1 of image 1 are far apart but end up in the same track
    images = {1: _image(1, [[0, 0], [100, 100]]), 2: _image(2, [[1, 1]])}
    graph = _graph(_pair(1, 2, [[0, 0], [1, 0]]))
    tracks = TrackEngine(graph, images, TrackEstablishmentOptions()).establish_full_tracks()
    assert len(tracks) == 1
    assert all(not t.observations for t in tracks.values())


def test_close_features_in_same_image_are_kept():
    images = {1: _image(1, [[0, 0], [1, 1]]), 2: _image(2, [[1, 1]])}
    graph = _graph(_pair(1, 2, [[0, 0], [1, 0]]))
    tracks = TrackEngine(graph, images, TrackEstablishmentOptions()).establish_full_tracks()
    (track,) = tracks.values()
    assert sorted(track.observations) == [(1, 0), (1, 1), (2, 0)]


def _track_set():
    return {
        10: Track(track_id=10, observations=[(1, 0), (2, 0), (3, 0), (4, 0)]),
        20: Track(track_id=20, observations=[(1, 1), (2, 1), (3, 1)]),
        30: Track(track_id=30, observations=[(1, 2), (2, 2)]),
    }


def _four_images(unregistered=()):
    return {i: _image(i, np.zeros((3, 2)), registered=i not in unregistered) for i in range(1, 5)}


def test_find_tracks_filters_short_tracks():
    engine = TrackEngine(ViewGraph(), _four_images(), TrackEstablishmentOptions())
    selected = engine.find_tracks_for_problem(_track_set())
    assert set(selected) == {10, 20}
    assert selected[10].observations == _track_set()[10].observations


def test_find_tracks_drops_unregistered_observations():
    engine = TrackEngine(ViewGraph(), _four_images(unregistered={3}), TrackEstablishmentOptions())
    selected = engine.find_tracks_for_problem(_track_set())
    assert set(selected) == {10}
    assert all(image_id != 3 for image_id, _ in selected[10].observations)


def test_find_tracks_respects_max_view_count():
    options = TrackEstablishmentOptions(max_num_view_per_track=3)
    engine = TrackEngine(ViewGraph(), _four_images(), options)
    assert set(engine.find_tracks_for_problem(_track_set())) == {20}


def test_find_tracks_stops_when_views_are_covered():
    options = TrackEstablishmentOptions(min_num_tracks_per_view=0)
    engine = TrackEngine(ViewGraph(), _four_images(), options)
    # the longest track alone gives every image more than zero tracks
    assert set(engine.find_tracks_for_problem(_track_set())) == {10}


def test_find_tracks_does_not_modify_input():
    full = _track_set()
    engine = TrackEngine(ViewGraph(), _four_images(unregistered={4}), TrackEstablishmentOptions())
    selected = engine.find_tracks_for_problem(full)
    assert len(full[10].observations) == 4
    assert len(selected[10].observations) == 3


@pytest.mark.parametrize("max_tracks", [0, 1])
def test_find_tracks_max_num_tracks(max_tracks):
    options = TrackEstablishmentOptions(max_num_tracks=max_tracks)
    engine = TrackEngine(ViewGraph(), _four_images(), options)
    assert len(engine.find_tracks_for_problem(_track_set())) == max_tracks + 1