"""Tests for unified diff parsing and rewriting."""
from gut.core.patch import parse_diff, render_patches, rewrite_diff
from gut.core.patterns import PatternEngine, PatternRule

MODIFY_DIFF = (
    "diff --git a/src/__P__/main.py b/src/__P__/main.py\n"
    "index 1111111111111111111111111111111111111111..2222222222222222222222222222222222222222 100644\n"
    "--- a/src/__P__/main.py\n"
    "+++ b/src/__P__/main.py\n"
    "@@ -1,3 +1,3 @@ class __P__Service:\n"
    " import os\n"
    "-print('__P__ v1')\n"
    "+print('__P__ v2')\n"
    " # end\n"
)

NEW_FILE_DIFF = (
    "diff --git a/docs/__P__.md b/docs/__P__.md\n"
    "new file mode 100644\n"
    "index 0000000000000000000000000000000000000000..3333333333333333333333333333333333333333\n"
    "--- /dev/null\n"
    "+++ b/docs/__P__.md\n"
    "@@ -0,0 +1 @@\n"
    "+# __P__\n"
    "\\ No newline at end of file\n"
)

DELETE_DIFF = (
    "diff --git a/old.txt b/old.txt\n"
    "deleted file mode 100644\n"
    "index 4444444444444444444444444444444444444444..0000000000000000000000000000000000000000\n"
    "--- a/old.txt\n"
    "+++ /dev/null\n"
    "@@ -1 +0,0 @@\n"
    "-__P__\n"
)

BINARY_DIFF = (
    "diff --git a/img/__P__.png b/img/__P__.png\n"
    "new file mode 100644\n"
    "index 0000000000000000000000000000000000000000..5555555555555555555555555555555555555555\n"
    "GIT binary patch\n"
    "literal 4\n"
    "Lc${__P__}0000\n"
    "\n"
    "literal 0\n"
    "HcmV?d00001\n"
    "\n"
)


def engine():
    return PatternEngine([PatternRule.placeholder("__P__")], {"__P__": "billing"})


class TestParseDiff:
    """Test splitting git diffs into file patches."""

    def test_modified_file(self):
        patches = parse_diff(MODIFY_DIFF)
        assert len(patches) == 1
        patch = patches[0]
        assert patch.old_path == patch.new_path == "src/__P__/main.py"
        assert not patch.is_new and not patch.is_deleted
        assert patch.hunk_count == 1

    def test_new_and_deleted_files(self):
        new, deleted = parse_diff(NEW_FILE_DIFF + DELETE_DIFF)
        assert new.is_new and new.path == "docs/__P__.md"
        assert deleted.is_deleted and deleted.path == "old.txt"

    def test_binary_patch(self):
        (patch,) = parse_diff(BINARY_DIFF)
        assert patch.binary
        assert patch.path == "img/__P__.png"

    def test_render_reproduces_input(self):
        text = MODIFY_DIFF + NEW_FILE_DIFF + DELETE_DIFF + BINARY_DIFF
        assert render_patches(parse_diff(text)) == text

    def test_empty_diff(self):
        assert parse_diff("") == []


class TestRewriteDiff:
    """Test rewriting paths and content through the pattern engine."""

    def test_paths_and_lines_rewritten(self):
        (patch,) = rewrite_diff(MODIFY_DIFF, engine())
        rendered = patch.render()

        assert patch.path == "src/billing/main.py"
        assert "diff --git a/src/billing/main.py b/src/billing/main.py\n" in rendered
        assert "--- a/src/billing/main.py\n" in rendered
        assert "+++ b/src/billing/main.py\n" in rendered
        assert "-print('billing v1')\n" in rendered
        assert "+print('billing v2')\n" in rendered
        assert "__P__" not in rendered

    def test_hunk_ranges_and_index_kept(self):
        (patch,) = rewrite_diff(MODIFY_DIFF, engine())
        rendered = patch.render()
        assert "@@ -1,3 +1,3 @@ class billingService:\n" in rendered
        assert "index 1111111111111111111111111111111111111111..2222" in rendered

    def test_new_file_keeps_dev_null(self):
        (patch,) = rewrite_diff(NEW_FILE_DIFF, engine())
        rendered = patch.render()
        assert "--- /dev/null\n" in rendered
        assert "+++ b/docs/billing.md\n" in rendered
        assert "+# billing\n" in rendered
        assert "\\ No newline at end of file\n" in rendered

    def test_deleted_file(self):
        (patch,) = rewrite_diff(DELETE_DIFF, engine())
        assert patch.is_deleted
        assert "-billing\n" in patch.render()
        assert "+++ /dev/null\n" in patch.render()

    def test_binary_content_untouched(self):
        (patch,) = rewrite_diff(BINARY_DIFF, engine())
        assert patch.path == "img/billing.png"
        assert "Lc${__P__}0000\n" in patch.render()

    def test_rewrite_is_deterministic(self):
        first = render_patches(rewrite_diff(MODIFY_DIFF + NEW_FILE_DIFF, engine()))
        second = render_patches(rewrite_diff(MODIFY_DIFF + NEW_FILE_DIFF, engine()))
        assert first == second

    def test_crlf_line_endings_preserved(self):
        diff = MODIFY_DIFF.replace("+print('__P__ v2')\n", "+print('__P__ v2')\r\n")
        (patch,) = rewrite_diff(diff, engine())
        assert "+print('billing v2')\r\n" in patch.render()
