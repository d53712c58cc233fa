from app.crawler import logging_utils


def test_crawler_event_label_and_phase(monkeypatch):
    events: list[str] = []
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: events.append(msg))

    logging_utils._crawler_event("state", phase="dispatch", kind="summary")

    assert events
    line = events[-1]
    assert line.startswith("[CRAWLER][STATE]")
    assert "phase='dispatch'" in line
    assert "kind='summary'" in line


def test_crawler_event_uses_phase_as_label(monkeypatch):
    events: list[str] = []
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: events.append(msg))

    logging_utils._crawler_event(phase="preflight", urls=3)

    assert events == ["[CRAWLER][PREFLIGHT] urls=3"]


def test_crawler_event_renders_enums_floats_and_long_lists(monkeypatch):
    from app.crawler.domain_health import DomainState

    events: list[str] = []
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: events.append(msg))
    urls = [f"https://site{index}.example.com" for index in range(logging_utils.MAX_LISTED_ITEMS + 2)]

    logging_utils._crawler_event("state", phase="domain_health", kind=DomainState.BLOCKED, delay=1.25, urls=urls)

    line = events[-1]
    assert line.startswith("[CRAWLER][STATE] phase='domain_health', delay=1.25, kind='blocked', ")
    assert "'https://site4.example.com', ...+2]" in line
    assert "site5" not in line


def test_crawler_event_swallows_render_failures(monkeypatch):
    class Unprintable:
        def __repr__(self) -> str:
            raise RuntimeError("no repr")

    events: list[str] = []
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: events.append(msg))

    logging_utils._crawler_event("error", value=Unprintable())

    assert events == []
