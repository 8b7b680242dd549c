"""
Unit Tests for ProjectFiles
Tests path confinement, listing, search and markdown collection
"""

import hashlib
import os

import pytest

from probe_agent.exceptions import FileAccessError, ProjectNotConfiguredError
from probe_agent.files import ProjectFiles


@pytest.fixture
def project(tmp_path):
    (tmp_path / "README.md").write_text("# Project\nUses the Employee table\n")
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("def main():\n    return 'employee'\n")
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "guide.md").write_text("Guide")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "dep.md").write_text("skip me employee")
    return tmp_path


@pytest.fixture
def files(project):
    return ProjectFiles(str(project))


class TestPathConfinement:
    """Test the project sandbox"""

    def test_parent_escape_rejected(self, files):
        """Test ../ cannot leave the project"""
        with pytest.raises(FileAccessError):
            files.resolve("../outside.txt")

    def test_absolute_path_rejected(self, files):
        """Test absolute paths outside the project are rejected"""
        with pytest.raises(FileAccessError):
            files.resolve("/etc/passwd")

    def test_sibling_prefix_rejected(self, project):
        """Test a sibling directory sharing the name prefix is outside"""
        sibling = project.parent / f"{project.name}-other"
        sibling.mkdir()
        files = ProjectFiles(str(project))

        with pytest.raises(FileAccessError):
            files.resolve(f"../{sibling.name}/x")

    def test_inner_path_allowed(self, files, project):
        """Test normal relative paths resolve inside"""
        assert files.resolve("src/../README.md") == (project / "README.md").resolve()
        assert files.resolve(".") == project.resolve()

    @pytest.mark.asyncio
    async def test_not_configured(self):
        """Test every operation fails without a project path"""
        files = ProjectFiles(None)

        assert not files.is_configured
        with pytest.raises(ProjectNotConfiguredError):
            await files.read_file("README.md")
        with pytest.raises(ProjectNotConfiguredError):
            await files.list_files()

    @pytest.mark.asyncio
    async def test_escape_rejected_on_read(self, files):
        """Test read refuses escaping paths before touching disk"""
        with pytest.raises(FileAccessError):
            await files.read_file("../../etc/passwd")


class TestFileOperations:
    """Test read, list and search"""

    @pytest.mark.asyncio
    async def test_read_file(self, files):
        """Test reading a file returns content and size"""
        result = await files.read_file("src/app.py")

        assert "def main" in result["content"]
        assert result["size"] == len("def main():\n    return 'employee'\n")

    @pytest.mark.asyncio
    async def test_read_missing_file(self, files):
        """Test a missing file raises an OS error"""
        with pytest.raises(OSError):
            await files.read_file("missing.txt")

    @pytest.mark.asyncio
    async def test_list_top_level(self, files):
        """Test non-recursive listing is sorted and typed"""
        entries = await files.list_files(".")
        names = [e["name"] for e in entries]

        assert names == ["README.md", "docs", "node_modules", "src"]
        readme = entries[0]
        assert readme["type"] == "file"
        assert readme["path"] == "README.md"
        assert "size" in readme and "modified" in readme
        assert entries[1]["type"] == "directory"

    @pytest.mark.asyncio
    async def test_list_recursive(self, files):
        """Test recursive listing includes nested paths"""
        paths = [e["path"] for e in await files.list_files(".", recursive=True)]

        assert "src/app.py" in paths
        assert "docs/guide.md" in paths

    @pytest.mark.asyncio
    async def test_list_skips_symlinks(self, files, project):
        """Test symlinked entries are left out of listings"""
        os.symlink(project / "src", project / "link")
        os.symlink(project / "README.md", project / "readme-link.md")

        top = [e["name"] for e in await files.list_files(".")]
        paths = [e["path"] for e in await files.list_files(".", recursive=True)]

        assert "link" not in top
        assert "readme-link.md" not in top
        assert not any(p.startswith("link") for p in paths)
        assert "src/app.py" in paths

    @pytest.mark.asyncio
    async def test_search(self, files):
        """Test case-insensitive search skips ignored directories"""
        results = await files.search_in_files("employee")
        by_file = {r["file"]: r["matches"] for r in results}

        assert set(by_file) == {"README.md", "src/app.py"}
        assert by_file["README.md"] == ["2: Uses the Employee table"]

    @pytest.mark.asyncio
    async def test_search_with_glob(self, files):
        """Test glob filters by file name"""
        results = await files.search_in_files("employee", "*.py")
        assert [r["file"] for r in results] == ["src/app.py"]

    @pytest.mark.asyncio
    async def test_invalid_pattern(self, files):
        """Test a bad regex is reported as ValueError"""
        with pytest.raises(ValueError):
            await files.search_in_files("(")


class TestProjectSync:
    """Test structure and markdown collection"""

    @pytest.mark.asyncio
    async def test_structure(self, files):
        """Test the tree skips ignored directories"""
        tree = await files.scan_project_structure()
        children = {c["name"]: c for c in tree["children"]}

        assert tree["type"] == "directory"
        assert "node_modules" not in children
        assert children["src"]["children"][0]["path"] == "src/app.py"

    @pytest.mark.asyncio
    async def test_markdown_files(self, files):
        """Test markdown files carry an MD5 content hash"""
        md_files = await files.scan_markdown_files()
        by_path = {f["path"]: f for f in md_files}

        assert set(by_path) == {"README.md", "docs/guide.md"}
        assert by_path["docs/guide.md"]["hash"] == hashlib.md5(b"Guide").hexdigest()
