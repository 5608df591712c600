import json

import pytest

from autodj.core.exceptions import DownloadFailed, MediaNotFound, MetadataFetchFailed
from autodj.services.fetcher import MediaFetcher, is_local_reference
from autodj.utils.process import CommandError, CompletedCommand


def _fake_run(calls, *, stdout="", error=None, on_call=None):
    async def fake_run_captured(args, *, timeout):
        calls.append(list(args))
        if on_call is not None:
            on_call(args)
        if error is not None:
            raise error
        return CompletedCommand(args=list(args), returncode=0, stdout=stdout, stderr="")

    return fake_run_captured


def test_is_local_reference() -> None:
    assert is_local_reference("/music/song.mp3")
    assert is_local_reference("file:///music/song.mp3")
    assert not is_local_reference("https://www.youtube.com/watch?v=abc")


@pytest.mark.anyio("asyncio")
async def test_probe_parses_first_json_line(monkeypatch) -> None:
    calls: list[list[str]] = []
    payload = json.dumps({"id": "abc", "title": "Song", "uploader": "Band"})
    monkeypatch.setattr("autodj.services.fetcher.run_captured", _fake_run(calls, stdout=payload + "\n{}\n"))

    fetcher = MediaFetcher()
    metadata = await fetcher.probe("https://www.youtube.com/watch?v=abc")

    assert (metadata.id, metadata.title, metadata.uploader) == ("abc", "Song", "Band")
    assert calls[0][:3] == ["yt-dlp", "-j", "--no-warnings"]
    assert fetcher.diagnostics.last_reference == "https://www.youtube.com/watch?v=abc"
    assert fetcher.diagnostics.auth_state == "No cookies"


@pytest.mark.anyio("asyncio")
async def test_probe_passes_cookies_when_present(monkeypatch, tmp_path) -> None:
    cookies = tmp_path / "cookies.txt"
    cookies.write_text("# Netscape HTTP Cookie File\n")
    calls: list[list[str]] = []
    payload = json.dumps({"id": "abc", "title": "Song"})
    monkeypatch.setattr("autodj.services.fetcher.run_captured", _fake_run(calls, stdout=payload))

    fetcher = MediaFetcher(cookies_path=cookies)
    await fetcher.probe("https://www.youtube.com/watch?v=abc")

    assert ["--cookies", str(cookies)] == calls[0][-3:-1]
    assert fetcher.diagnostics.auth_state == "Cookies loaded"


@pytest.mark.anyio("asyncio")
async def test_probe_maps_not_found(monkeypatch) -> None:
    error = CommandError(
        "yt-dlp exited with code 1",
        args=["yt-dlp"],
        returncode=1,
        stderr="ERROR: [youtube] abc: Video unavailable",
    )
    monkeypatch.setattr("autodj.services.fetcher.run_captured", _fake_run([], error=error))

    fetcher = MediaFetcher()
    with pytest.raises(MediaNotFound):
        await fetcher.probe("https://www.youtube.com/watch?v=abc")
    assert "Video unavailable" in fetcher.diagnostics.stderr


@pytest.mark.anyio("asyncio")
async def test_probe_maps_other_failures(monkeypatch) -> None:
    error = CommandError("yt-dlp timed out", args=["yt-dlp"], returncode=None, stderr="")
    monkeypatch.setattr("autodj.services.fetcher.run_captured", _fake_run([], error=error))

    with pytest.raises(MetadataFetchFailed) as excinfo:
        await MediaFetcher().probe("https://www.youtube.com/watch?v=abc")
    assert not isinstance(excinfo.value, MediaNotFound)


@pytest.mark.anyio("asyncio")
async def test_probe_local_file_uses_stem(tmp_path) -> None:
    track = tmp_path / "Band - Song.mp3"
    track.write_bytes(b"x")

    metadata = await MediaFetcher().probe(str(track))

    assert metadata.title == "Band - Song"


@pytest.mark.anyio("asyncio")
async def test_probe_missing_local_file(tmp_path) -> None:
    with pytest.raises(MediaNotFound):
        await MediaFetcher().probe(str(tmp_path / "missing.mp3"))


@pytest.mark.anyio("asyncio")
async def test_download_returns_written_file(monkeypatch, tmp_path) -> None:
    calls: list[list[str]] = []

    def create_output(args):
        (tmp_path / "abc.webm").write_bytes(b"audio")

    monkeypatch.setattr("autodj.services.fetcher.run_captured", _fake_run(calls, on_call=create_output))

    path = await MediaFetcher().download("https://www.youtube.com/watch?v=abc", tmp_path, "abc")

    assert path == tmp_path / "abc.webm"
    assert calls[0][1:3] == ["-f", "bestaudio"]


@pytest.mark.anyio("asyncio")
async def test_download_without_output_fails(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr("autodj.services.fetcher.run_captured", _fake_run([]))

    with pytest.raises(DownloadFailed):
        await MediaFetcher().download("https://www.youtube.com/watch?v=abc", tmp_path, "abc")


@pytest.mark.anyio("asyncio")
async def test_download_local_copies(tmp_path) -> None:
    source = tmp_path / "song.flac"
    source.write_bytes(b"flac")
    scratch = tmp_path / "scratch"

    path = await MediaFetcher().download(str(source), scratch, "id1")

    assert path == scratch / "id1.flac"
    assert path.read_bytes() == b"flac"


@pytest.mark.anyio("asyncio")
async def test_list_playlist_collects_entry_urls(monkeypatch) -> None:
    payload = json.dumps(
        {
            "entries": [
                {"url": "https://www.youtube.com/watch?v=a"},
                None,
                {"id": "b"},
                {"webpage_url": "https://www.youtube.com/watch?v=c", "url": "c"},
            ]
        }
    )
    monkeypatch.setattr("autodj.services.fetcher.run_captured", _fake_run([], stdout=payload))

    refs = await MediaFetcher().list_playlist("https://www.youtube.com/playlist?list=PL1")

    assert refs == [
        "https://www.youtube.com/watch?v=a",
        "https://www.youtube.com/watch?v=b",
        "https://www.youtube.com/watch?v=c",
    ]


@pytest.mark.anyio("asyncio")
async def test_list_local_directory(tmp_path) -> None:
    (tmp_path / "b.mp3").write_bytes(b"")
    (tmp_path / "a.ogg").write_bytes(b"")
    (tmp_path / "notes.txt").write_text("skip")

    refs = await MediaFetcher().list_playlist(str(tmp_path))

    assert refs == [str(tmp_path / "a.ogg"), str(tmp_path / "b.mp3")]
