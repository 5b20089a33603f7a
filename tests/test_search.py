import asyncio
import os

from conftest import FakeRecognizer

from obsidian_ocr_mcp.paths import Vault
from obsidian_ocr_mcp.search import (
    SearchEngine,
    SearchResult,
    SupersededSearchError,
    format_recognized_text,
    parse_task_command,
    sort_results,
)
from obsidian_ocr_mcp.vault import VaultHost


def _engine(tmp_path, host, recognizer=None, **kwargs) -> SearchEngine:
    return SearchEngine(
        host=host,
        index_path=tmp_path / "index.json",
        recognize=recognizer or FakeRecognizer(),
        **kwargs,
    ).open()


def test_empty_and_short_queries_return_nothing(tmp_path, host):
    host.add("note.md", "plan")
    engine = _engine(tmp_path, host)

    assert asyncio.run(engine.search("")) == []
    assert asyncio.run(engine.search("   ")) == []
    assert asyncio.run(engine.search("p")) == []
    assert asyncio.run(engine.search("-plan")) == []


def test_heading_result_comes_first(tmp_path, host):
    host.add("a.md", "# Project Plan\n\nSome intro", mtime=5_000)
    host.add("b.md", "we still need a plan for this", mtime=5_000)
    engine = _engine(tmp_path, host)

    results = asyncio.run(engine.search("plan"))

    assert [r.item_ref for r in results] == ["a.md", "b.md"]
    assert results[0].is_title
    assert results[0].matched_content == "# Project Plan"
    assert results[0].start_line == 1


def test_recency_is_primary_sort_key(tmp_path, host):
    host.add("old.md", "# Plan", mtime=1_000)
    host.add("new.md", "plan in passing", mtime=9_000)
    engine = _engine(tmp_path, host)

    results = asyncio.run(engine.search("plan"))

    assert [r.item_ref for r in results] == ["new.md", "old.md"]


def test_block_results_carry_lines_and_context(tmp_path, host):
    host.add("n.md", "intro\n\nfirst budget line\nsecond line\n\noutro")
    engine = _engine(tmp_path, host)

    [result] = asyncio.run(engine.search("budget"))

    assert (result.start_line, result.end_line) == (3, 4)
    assert result.matched_content == "first budget line\nsecond line"
    assert result.context == "\nfirst budget line\nsecond line\n"
    assert result.matched_terms == ["budget"]


def test_every_keyword_must_be_in_the_same_block(tmp_path, host):
    host.add("n.md", "alpha here\n\nbeta there\n\nalpha and beta")
    engine = _engine(tmp_path, host)

    results = asyncio.run(engine.search("alpha beta"))

    assert [r.matched_content for r in results] == ["alpha and beta"]


def test_negated_terms_drop_blocks(tmp_path, host):
    host.add("n.md", "plan draft\n\nplan final")
    engine = _engine(tmp_path, host)

    results = asyncio.run(engine.search("plan -draft"))

    assert [r.matched_content for r in results] == ["plan final"]


def test_file_name_match_result(tmp_path, host):
    host.add("Meeting Plan.md", "nothing here")
    engine = _engine(tmp_path, host)

    [result] = asyncio.run(engine.search("plan"))

    assert result.matched_content == "File: Meeting Plan"
    assert result.score == 2000
    assert result.context == "Meeting Plan.md"


def test_image_results_from_recognized_text(tmp_path, host):
    host.add("img/receipt.png", mtime=3_000)
    host.add("Trip.md", "Hotel stay\n![[receipt.png]]", mtime=1_000)
    recognizer = FakeRecognizer({"/vault/img/receipt.png": "GRAND HOTEL\nTotal  42"})
    engine = _engine(tmp_path, host, recognizer)
    asyncio.run(engine.index_all())

    results = asyncio.run(engine.search("total"))

    assert results[0].is_image_result
    assert results[0].item_ref == "img/receipt.png"
    assert results[0].matched_content == "GRAND HOTEL Total 42"
    assert results[0].score == 20 + 30 + 500
    assert results[0].context == "Trip: Hotel stay"


def test_image_found_through_referencing_note_title(tmp_path, host):
    host.add("img/scan.png")
    host.add("Vacation.md", "![[scan.png]]")
    engine = _engine(tmp_path, host)
    asyncio.run(engine.index_all())

    results = asyncio.run(engine.search("vacation"))

    image_results = [r for r in results if r.is_image_result]
    assert [r.item_ref for r in image_results] == ["img/scan.png"]
    assert image_results[0].matched_content == "No text detected"


def test_image_file_name_bonus(tmp_path, host):
    host.add("img/invoice-2024.png")
    recognizer = FakeRecognizer({"/vault/img/invoice-2024.png": "invoice"})
    engine = _engine(tmp_path, host, recognizer)
    asyncio.run(engine.index_all())

    [result] = asyncio.run(engine.search("invoice"))

    assert result.score == 20 + 30 + 500 + 1000


def test_excluded_folders_are_not_searched(tmp_path, host):
    host.add("Archive/old.md", "plan")
    host.add("Archive/img.png")
    host.add("live.md", "plan")
    engine = _engine(tmp_path, host, exclude_folders=("Archive",))

    results = asyncio.run(engine.search("plan"))

    assert [r.item_ref for r in results] == ["live.md"]


def test_results_are_capped(tmp_path, host):
    host.add("n.md", "\n\n".join(f"plan {n}" for n in range(80)))
    engine = _engine(tmp_path, host)

    assert len(asyncio.run(engine.search("plan"))) == 50
    assert len(asyncio.run(engine.search("plan", max_results=5))) == 5


def test_unreadable_note_is_skipped(tmp_path, host):
    host.add("broken.md", "plan")
    host.add("fine.md", "plan")
    host.broken.add("broken.md")
    engine = _engine(tmp_path, host)

    results = asyncio.run(engine.search("plan"))

    assert [r.item_ref for r in results] == ["fine.md"]


def test_newer_query_supersedes_older_one(tmp_path, host):
    host.add("a.md", "plan")
    host.add("b.md", "plan budget")
    engine = _engine(tmp_path, host)

    async def run_both():
        return await asyncio.gather(engine.search("plan"), engine.search("budget"))

    first, second = asyncio.run(run_both())

    assert first == []
    assert [r.item_ref for r in second] == ["b.md"]
    assert engine.current_query == 2


def test_lowercase_task_words_are_ordinary_keywords(tmp_path, host):
    host.add("deal.md", "the deal is done")
    host.add("tasks.md", "- [x] sign the deal")
    engine = _engine(tmp_path, host)

    results = asyncio.run(engine.search("done deal"))

    assert [r.matched_content for r in results] == ["the deal is done"]


def test_task_search(tmp_path, host):
    host.add("tasks.md", "- [ ] buy milk\n- [x] pay rent\n- [ ] call bank\n")
    engine = _engine(tmp_path, host)

    open_tasks = asyncio.run(engine.search("TODO"))
    done = asyncio.run(engine.search("DONE"))
    filtered = asyncio.run(engine.search("TODO milk"))

    assert [r.matched_content for r in open_tasks] == ["- [ ] buy milk", "- [ ] call bank"]
    assert [r.start_line for r in done] == [2]
    assert [(r.matched_content, r.score) for r in filtered] == [("- [ ] buy milk", 150)]


def test_parse_task_command():
    assert parse_task_command("TODO groceries") == (False, "groceries")
    assert parse_task_command("DONE") == (True, "")
    assert parse_task_command("TODOS") is None
    assert parse_task_command("done deal") is None
    assert parse_task_command("todo list") is None


def test_format_recognized_text():
    assert format_recognized_text(" line one \n\n  line   two\n") == "line one line two"
    assert format_recognized_text("") == ""


def test_sort_results_uses_time_then_score():
    results = [
        SearchResult("a", "", 0, 0, [], 10, "", modified_time=1),
        SearchResult("b", "", 0, 0, [], 5, "", modified_time=2),
        SearchResult("c", "", 0, 0, [], 50, "", modified_time=1),
    ]
    assert [r.item_ref for r in sort_results(results)] == ["b", "c", "a"]


def test_index_management(tmp_path, host):
    host.add("a.png")
    host.add("b.png")
    engine = _engine(tmp_path, host)

    asyncio.run(engine.index_all())
    assert engine.get_index_stats().total == 2
    assert engine.get_cached_result("a.png") is not None

    asyncio.run(engine.clear_index())
    assert engine.get_index_stats().total == 0
    assert engine.get_cached_result("a.png") is None


def test_engine_persists_between_sessions(tmp_path, host):
    host.add("a.png")
    recognizer = FakeRecognizer({"/vault/a.png": "persisted"})
    with _engine(tmp_path, host, recognizer) as engine:
        asyncio.run(engine.index_all())

    reopened = _engine(tmp_path, host)
    assert reopened.get_cached_result("a.png").text == "persisted"
    assert asyncio.run(reopened.incremental_update()).skipped == 1


def test_end_to_end_on_disk(tmp_path):
    root = tmp_path / "vault"
    root.mkdir()
    (root / "Projects.md").write_text("# Project Plan\n\nGoals", encoding="utf-8")
    (root / "Journal.md").write_text("Thinking about the plan today.", encoding="utf-8")
    (root / ".obsidian").mkdir()
    (root / ".obsidian" / "plan.md").write_text("plan", encoding="utf-8")
    for name in ("Projects.md", "Journal.md"):
        os.utime(root / name, (1_700_000_000, 1_700_000_000))

    engine = SearchEngine(
        host=VaultHost(Vault("vault", root)),
        index_path=tmp_path / "index.json",
        recognize=FakeRecognizer(),
    ).open()

    results = asyncio.run(engine.search("plan"))

    assert [r.item_ref for r in results] == ["Projects.md", "Journal.md"]


def test_or_alternative_matches_note_blocks(tmp_path, host):
    host.add("pets.md", "walked the dog\n\nfed the fish")
    engine = _engine(tmp_path, host)

    [result] = asyncio.run(engine.search("cat OR dog"))

    assert result.matched_content == "walked the dog"
    assert result.matched_terms == ["dog"]


def test_superseded_search_can_raise(tmp_path, host):
    host.add("a.md", "plan")
    engine = _engine(tmp_path, host)

    async def run_both():
        return await asyncio.gather(
            engine.search("plan", raise_superseded=True),
            engine.search("plan"),
            return_exceptions=True,
        )

    first, second = asyncio.run(run_both())

    assert isinstance(first, SupersededSearchError)
    assert [r.item_ref for r in second] == ["a.md"]


def test_concurrent_indexing_runs_one_at_a_time(tmp_path, host):
    for number in range(4):
        host.add(f"img/{number}.png")
    recognizer = FakeRecognizer(delay=0.01)
    engine = _engine(tmp_path, host, recognizer)

    async def run_both():
        return await asyncio.gather(
            engine.index_all(concurrency_limit=2),
            engine.index_all(concurrency_limit=2),
        )

    recognized = asyncio.run(run_both())

    assert sorted(recognized) == [0, 4]
    assert recognizer.max_in_flight <= 2
    assert sorted(recognizer.calls) == [f"/vault/img/{n}.png" for n in range(4)]


def test_clear_index_waits_for_running_indexing(tmp_path, host):
    host.add("a.png")
    engine = _engine(tmp_path, host, FakeRecognizer(delay=0.01))

    async def index_then_clear():
        indexing = asyncio.ensure_future(engine.index_all())
        await asyncio.sleep(0)
        await engine.clear_index()
        return await indexing

    assert asyncio.run(index_then_clear()) == 1
    assert engine.get_index_stats().total == 0
