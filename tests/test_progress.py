from cutout_service.progress import DEFAULT_KEY, ProgressAggregator
from cutout_service.protocol import (
    DoneEvent,
    DownloadEvent,
    FileProgressEvent,
    InitiateEvent,
    ReadyEvent,
)


def test_two_files_aggregate_to_fifty_percent():
    agg = ProgressAggregator()
    agg.on_event(FileProgressEvent(file="a", loaded=50, total=100))
    update = agg.on_event(FileProgressEvent(file="b", loaded=25, total=50))
    assert update.percent == 50
    assert update.message == "Downloading model... 50%"
    assert agg.aggregate_percent() == 50


def test_zero_totals_report_zero():
    agg = ProgressAggregator()
    update = agg.on_event(InitiateEvent(file="a"))
    assert update.message == "Preparing a..."
    update = agg.on_event(FileProgressEvent(file="a", loaded=10, total=0))
    assert update.percent == 0
    assert agg.aggregate_percent() == 0


def test_done_clamps_loaded_to_total():
    agg = ProgressAggregator()
    agg.on_event(InitiateEvent(file="a"))
    agg.on_event(FileProgressEvent(file="a", loaded=90, total=100))
    update = agg.on_event(DoneEvent(file="a"))
    assert update.message == "Model files ready"
    assert agg.files["a"].loaded == 100
    assert agg.aggregate_percent() == 100


def test_done_without_known_total_leaves_entry():
    agg = ProgressAggregator()
    agg.on_event(InitiateEvent(file="a"))
    agg.on_event(DoneEvent(file="a"))
    assert agg.files["a"].loaded == 0


def test_missing_file_uses_default_key():
    agg = ProgressAggregator()
    update = agg.on_event(InitiateEvent())
    assert update.message == "Preparing file..."
    assert DEFAULT_KEY in agg.files


def test_displayed_percent_never_goes_back():
    agg = ProgressAggregator()
    agg.on_event(FileProgressEvent(file="a", loaded=80, total=100))
    # A second, larger file starts and drags the raw ratio down.
    update = agg.on_event(FileProgressEvent(file="b", loaded=0, total=300))
    assert agg.aggregate_percent() == 20
    assert update.percent == 80

    seen = []
    for loaded in (100, 200, 300):
        seen.append(agg.on_event(FileProgressEvent(file="b", loaded=loaded, total=300)).percent)
    assert seen == sorted(seen)
    assert agg.on_event(FileProgressEvent(file="a", loaded=100, total=100)).percent == 100


def test_download_and_ready_events():
    agg = ProgressAggregator()
    assert agg.on_event(DownloadEvent(file="a")) is None
    assert agg.on_event(ReadyEvent()).message == "Model ready"


def test_reset_clears_entries():
    agg = ProgressAggregator()
    agg.on_event(FileProgressEvent(file="a", loaded=50, total=100))
    agg.reset()
    assert agg.files == {}
    assert agg.displayed_percent == 0
    assert agg.aggregate_percent() == 0
