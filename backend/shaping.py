from typing import Any, Dict, Iterator, List, Mapping, Sequence

# Spotify's /artists endpoint accepts at most this many ids per call
ARTISTS_BATCH_SIZE = 50

SNAPSHOT_TOP_TRACKS = 25
SNAPSHOT_TOP_ARTISTS = 20
SNAPSHOT_RECENT = 20


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _head(value: Any, n: int) -> List[Any]:
    return list(value[:n]) if isinstance(value, list) else []


def unique_artist_ids(tracks: Sequence[Mapping[str, Any]]) -> List[str]:
    seen: Dict[str, None] = {}
    for track in tracks:
        for artist in track.get("artists") or []:
            artist_id = _as_dict(artist).get("id")
            if artist_id:
                seen.setdefault(artist_id, None)
    return list(seen)


def chunked(items: Sequence[Any], size: int = ARTISTS_BATCH_SIZE) -> Iterator[List[Any]]:
    for i in range(0, len(items), size):
        yield list(items[i:i + size])


def enrich_tracks(
    tracks: Sequence[Mapping[str, Any]], genres_by_artist: Mapping[str, List[str]]
) -> List[Dict[str, Any]]:
    """Slim each top track down and attach artist genres."""
    items = []
    for t in tracks:
        album = _as_dict(t.get("album"))
        items.append({
            "id": t.get("id"),
            "name": t.get("name"),
            "uri": t.get("uri"),
            "popularity": t.get("popularity"),
            "duration_ms": t.get("duration_ms"),
            "explicit": t.get("explicit"),
            "album": {
                "id": album.get("id"),
                "name": album.get("name"),
                "release_date": album.get("release_date"),
            },
            "artists": [
                {
                    "id": a.get("id"),
                    "name": a.get("name"),
                    "genres": genres_by_artist.get(a.get("id"), []),
                }
                for a in map(_as_dict, t.get("artists") or [])
            ],
        })
    return items


def compact_snapshot(snapshot: Any) -> Dict[str, Any]:
    """
    Trim a client snapshot to what the model needs, keeping the prompt small:
    25 top tracks, 20 top artists, 20 recent plays, and a few profile fields.
    """
    s = _as_dict(snapshot)
    profile = _as_dict(s.get("profile"))

    return {
        "generatedAt": s.get("generatedAt"),
        "profile": {
            "id": profile.get("id"),
            "displayName": profile.get("displayName"),
            "country": profile.get("country"),
        } if profile else None,
        "topTracks": [
            {"id": t.get("id"), "name": t.get("name"), "uri": t.get("uri"), "artists": t.get("artists")}
            for t in map(_as_dict, _head(s.get("topTracks"), SNAPSHOT_TOP_TRACKS))
        ],
        "topArtists": [
            {"id": a.get("id"), "name": a.get("name"), "genres": a.get("genres"), "popularity": a.get("popularity")}
            for a in map(_as_dict, _head(s.get("topArtists"), SNAPSHOT_TOP_ARTISTS))
        ],
        "recent": [
            {"played_at": r.get("played_at"), "id": r.get("id"), "name": r.get("name"), "artists": r.get("artists")}
            for r in map(_as_dict, _head(s.get("recent"), SNAPSHOT_RECENT))
        ],
    }
