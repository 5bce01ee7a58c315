import pytest

from utils.text_cleaner import is_status_noise


class TestStatusNoise:
    @pytest.mark.parametrize(
        "text",
        [
            "正在装配记忆库...",
            "🧠 构建完整上下文",
            "💾 保存中",
            "AI开始创作中",
            "正在生成章节概括...",
            "  思考中…",
            "preparing",
            "Saving...",
            "updating memory:",
            "context_ready",
        ],
    )
    def test_status_lines(self, text):
        assert is_status_noise(text) is True

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "   ",
            "战斗正在进行，谁也没有退。",
            "The mission was complete before dawn.",
            "夜色渐深。",
        ],
    )
    def test_prose(self, text):
        assert is_status_noise(text) is False

    def test_specific_phrase_matches_anywhere(self):
        assert is_status_noise("第三章写作完成，共3000字") is True

    @pytest.mark.parametrize("text", ["正在进行的谈判终于破裂了。", "生成中的阵法", "思考中的少年抬起头"])
    def test_generic_openers_only_apply_to_raw_text(self, text):
        assert is_status_noise(text) is True
        assert is_status_noise(text, raw=False) is False

    def test_markers_and_tokens_apply_to_structured_text(self):
        assert is_status_noise("🧠 构建中", raw=False) is True
        assert is_status_noise("preparing", raw=False) is True
        assert is_status_noise("正在装配记忆库...", raw=False) is True
