"""
Unit Tests for development stream logs
"""
from shipyard.modules.overlay.virtual_fs import OverlayFile
from shipyard.services.dev_logs import FILES_LOG_FILE, SSE_LOG_FILE, DevLogStore


APP_ID = "3f1c2a"


def make_folder(base, name, files=None):
    folder = base / name
    folder.mkdir(parents=True)
    for file_name, content in (files or {}).items():
        (folder / file_name).write_text(content)
    return folder


class TestDevLogSession:
    """Writing one request's folder"""

    async def test_writes_frames_diffs_and_files(self, tmp_path):
        store = DevLogStore(tmp_path, enabled=True)
        session = store.open(f"app-{APP_ID}.req-abc")

        await session.write_frame('data: {"a": 1}')
        await session.write_frame('data: {"a": 2}')
        await session.write_diff("--- a/x\n+++ b/x\n")
        await session.write_files([OverlayFile("x", b"hello")])

        names = sorted(p.name for p in session.folder.iterdir())
        assert SSE_LOG_FILE in names
        assert FILES_LOG_FILE in names
        assert any(name.startswith("unified_diff-") and name.endswith(".patch") for name in names)
        assert (session.folder / SSE_LOG_FILE).read_text().count('data: {"a"') == 2
        assert session.folder.name.startswith(f"app-{APP_ID}.req-abc_")

    async def test_promote_renames_folder(self, tmp_path):
        store = DevLogStore(tmp_path, enabled=True)
        session = store.open("temp.req-abc")
        await session.write_frame("data: {}")
        temporary_folder = session.folder

        await session.promote(f"app-{APP_ID}.req-abc")

        assert not temporary_folder.exists()
        assert session.folder.exists()
        assert session.folder.name == f"app-{APP_ID}.req-abc_{session.timestamp}"

    async def test_promote_before_any_write(self, tmp_path):
        store = DevLogStore(tmp_path, enabled=True)
        session = store.open("temp.req-abc")

        await session.promote(f"app-{APP_ID}.req-abc")
        await session.write_frame("data: {}")

        assert [p.name for p in tmp_path.iterdir()] == [session.folder.name]

    async def test_disabled_writes_nothing(self, tmp_path):
        store = DevLogStore(tmp_path / "logs", enabled=False)
        session = store.open(f"app-{APP_ID}.req-abc")

        await session.write_frame("data: {}")
        await session.write_files([])

        assert not (tmp_path / "logs").exists()


class TestDevLogStore:
    """Listing and reading folders"""

    async def test_list_folders_newest_first(self, tmp_path):
        make_folder(tmp_path, f"app-{APP_ID}.req-aaa_1000")
        make_folder(tmp_path, f"app-{APP_ID}.req-bbb_3000")
        make_folder(tmp_path, f"app-{APP_ID}.req-ccc_2000")
        make_folder(tmp_path, "app-other.req-ddd_4000")
        make_folder(tmp_path, "temp.req-eee_5000")

        folders = await DevLogStore(tmp_path, enabled=True).list_folders(APP_ID)

        assert [f["requestId"] for f in folders] == ["bbb", "ccc", "aaa"]
        assert folders[0] == {
            "folderName": f"app-{APP_ID}.req-bbb_3000",
            "traceId": f"app-{APP_ID}.req-bbb_3000",
            "requestId": "bbb",
            "timestamp": 3000,
        }

    async def test_list_without_logs_dir(self, tmp_path):
        assert await DevLogStore(tmp_path / "missing", enabled=True).list_folders(APP_ID) == []

    async def test_read_trace_by_folder_name(self, tmp_path):
        make_folder(tmp_path, f"app-{APP_ID}.req-aaa_1000", {SSE_LOG_FILE: "frames"})

        contents = await DevLogStore(tmp_path, enabled=True).read_trace(APP_ID, f"app-{APP_ID}.req-aaa_1000")

        assert contents == {f"app-{APP_ID}.req-aaa_1000/{SSE_LOG_FILE}": "frames"}

    async def test_read_trace_all_attempts(self, tmp_path):
        make_folder(tmp_path, f"app-{APP_ID}.req-aaa_1000", {SSE_LOG_FILE: "first"})
        make_folder(tmp_path, f"app-{APP_ID}.req-aaa_2000", {SSE_LOG_FILE: "second"})
        make_folder(tmp_path, f"app-{APP_ID}.req-bbb_3000", {SSE_LOG_FILE: "other"})

        contents = await DevLogStore(tmp_path, enabled=True).read_trace(APP_ID, f"app-{APP_ID}.req-aaa")

        assert sorted(contents.values()) == ["first", "second"]

    async def test_read_foreign_trace_is_empty(self, tmp_path):
        make_folder(tmp_path, "app-other.req-aaa_1000", {SSE_LOG_FILE: "secret"})

        contents = await DevLogStore(tmp_path, enabled=True).read_trace(APP_ID, "app-other.req-aaa_1000")

        assert contents == {}
