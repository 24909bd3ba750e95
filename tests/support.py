"""Test data shared across test modules."""

import json

import httpx

VIDEO_ID = "dQw4w9WgXcQ"
OTHER_VIDEO_ID = "9bZkp7q19f0"
WATCH_URL = f"https://www.youtube.com/watch?v={VIDEO_ID}"
OTHER_WATCH_URL = f"https://www.youtube.com/watch?v={OTHER_VIDEO_ID}"

JSON3_BODY = json.dumps({
    "events": [
        {"tStartMs": 0, "dDurationMs": 1500, "segs": [{"utf8": "Hello"}]},
        {"tStartMs": 1500, "dDurationMs": 2000, "segs": [{"utf8": "world"}]},
    ]
})

LEGACY_BODY = (
    '<?xml version="1.0" encoding="utf-8" ?><transcript>'
    '<text start="0" dur="1.5">Hello</text>'
    '<text start="1.5" dur="2">world</text>'
    "</transcript>"
)


def timedtext_url(video_id: str = VIDEO_ID, lang: str = "en", fmt: str | None = None, kind: str | None = None) -> str:
    url = f"https://www.youtube.com/api/timedtext?v={video_id}&lang={lang}"
    if kind:
        url = f"{url}&kind={kind}"
    return f"{url}&fmt={fmt}" if fmt else url


def player_response(
    tracks: list[tuple[str, bool]] | None = None,
    video_id: str = VIDEO_ID,
    title: str = "Test Video",
    description: str = "A description",
) -> dict:
    """
    Build a ytInitialPlayerResponse-shaped document.

    Args:
        tracks: (language code, auto-generated) pairs; one manual English
            track by default
    """
    if tracks is None:
        tracks = [("en", False)]
    return {
        "videoDetails": {"videoId": video_id, "title": title, "shortDescription": description},
        "captions": {
            "playerCaptionsTracklistRenderer": {
                "captionTracks": [
                    {
                        "baseUrl": timedtext_url(video_id, lang, kind="asr" if auto else None),
                        "languageCode": lang,
                        "kind": "asr" if auto else "",
                        "name": {"simpleText": lang},
                    }
                    for lang, auto in tracks
                ]
            }
        },
    }


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MockNetwork:
    """
    httpx MockTransport handler serving timedtext bodies by language.

    Records every request so tests can assert what went over the wire.
    """

    def __init__(self, bodies: dict[str, str] | None = None, status_code: int = 200):
        self.bodies = {"en": JSON3_BODY} if bodies is None else bodies
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        lang = request.url.params.get("lang", "")
        return httpx.Response(self.status_code, text=self.bodies.get(lang, ""))

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))
