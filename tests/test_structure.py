import pytest

from primer.core.structure import StructureDetector, is_excluded_heading

from conftest import E2E_TEXT


@pytest.fixture
def detector():
    return StructureDetector()


class TestChapterRules:
    """Each chapter heading style is recognised with its confidence."""

    @pytest.mark.parametrize("line, number, title, confidence", [
        ("Chapter 3: Forces", "3", "Forces", 0.95),
        ("Ch. 4 - Waves", "4", "Waves", 0.95),
        ("Chapter 5", "5", "Chapter 5", 0.95),
        ("3: Forces", "3", "Forces", 0.85),
        ("Unit 2: Cells", "2", "Cells", 0.80),
        ("Part IV", "IV", "Part IV", 0.80),
        ("Tissue Level of Organization", "0", "Tissue Level of Organization", 0.75),
        ("The Immune System", "0", "The Immune System", 0.75),
        ("Cell Biology", "0", "Cell Biology", 0.70),
    ])
    def test_matches(self, detector, line, number, title, confidence):
        rule, (found_number, found_title, _) = detector.match_chapter(line)
        assert rule.confidence == confidence
        assert found_number == number
        assert found_title == title

    def test_dotted_number_is_not_a_chapter(self, detector):
        assert detector.match_chapter("1.1 Basics") is None

    def test_heuristic_title_ending_in_function_word_is_rejected(self, detector):
        assert detector.match_chapter("Cells And") is None

    def test_threshold_drops_weaker_rules(self):
        strict = StructureDetector(min_chapter_confidence=0.8)
        assert strict.match_chapter("Cell Biology") is None
        assert strict.match_chapter("Unit 2: Cells") is not None


class TestSectionRules:
    @pytest.mark.parametrize("line, number, title, level, confidence", [
        ("1.1 Basics", "1.1", "Basics", 1, 0.90),
        ("2.3: Energy Flow", "2.3", "Energy Flow", 1, 0.90),
        ("Section 3.2: Forces", "3.2", "Forces", 1, 0.85),
        ("2.1.3 Heat Transfer", "2.1.3", "Heat Transfer", 2, 0.80),
    ])
    def test_matches(self, detector, line, number, title, level, confidence):
        rule, extracted = detector.match_section(line)
        assert rule.confidence == confidence
        assert extracted == (number, title, level)

    def test_length_limits(self, detector):
        assert detector.match_section("Ab") is None
        assert detector.match_section("1.1 " + "Word " * 30) is None

    def test_prose_is_not_a_section(self, detector):
        line = "1.2 The cell is the smallest unit of life that can replicate"
        assert detector.match_section(line) is None


class TestExclusions:
    @pytest.mark.parametrize("line", [
        "Introduction", "Summary", "Table of Contents", "PREFACE",
        "Index of terms", "Appendix A", "Review Questions", "key   terms",
    ])
    def test_front_and_back_matter(self, line):
        assert is_excluded_heading(line)

    def test_prefix_needs_a_word_boundary(self):
        assert not is_excluded_heading("Indexing Methods")

    def test_excluded_lines_never_become_headings(self, detector):
        outline = detector.detect("Chapter 1: Cells\nSummary\nIntroduction\nKey Terms")
        assert [c.title for c in outline.chapters] == ["Cells"]
        assert outline.sections == []


class TestDetect:
    """Outline assembly from whole documents."""

    def test_chapter_with_section(self, detector):
        outline = detector.detect(E2E_TEXT)

        assert len(outline.chapters) == 1
        chapter = outline.chapters[0]
        assert (chapter.number, chapter.title) == ("1", "Intro")
        assert chapter.start_line == 0

        assert len(outline.sections) == 1
        section = outline.sections[0]
        assert (section.number, section.title) == ("1.1", "Basics")
        assert section.chapter_title == "Intro"
        assert section.level == 1

    def test_sections_attach_to_the_open_chapter(self, detector):
        text = "Chapter 1: Cells\n1.1 Membranes\nChapter 2: Energy\n2.1.3 Heat Transfer"
        outline = detector.detect(text)
        assert [(s.number, s.chapter_title, s.level) for s in outline.sections] == [
            ("1.1", "Cells", 1),
            ("2.1.3", "Energy", 2),
        ]

    def test_sections_before_any_chapter_are_dropped(self, detector):
        outline = detector.detect("1.1 Basics\nChapter 1: Intro\n1.2 More")
        assert [s.number for s in outline.sections] == ["1.2"]

    def test_weak_chapter_becomes_section_under_strict_threshold(self):
        text = "Chapter 1: Cells\nCell Biology"
        assert len(StructureDetector().detect(text).chapters) == 2

        strict = StructureDetector(min_chapter_confidence=0.8).detect(text)
        assert [c.title for c in strict.chapters] == ["Cells"]
        assert [(s.title, s.confidence) for s in strict.sections] == [("Cell Biology", 0.70)]

    def test_quality_score_is_mean_confidence(self, detector):
        outline = detector.detect("Chapter 1: Intro\n1.1 Basics")
        assert outline.quality_score == pytest.approx((0.95 + 0.90) / 2)

    def test_chapters_are_in_document_order(self, detector):
        text = "Cell Biology\ntext body.\nChapter 2: Energy\nmore text.\nUnit 3: Waves"
        outline = detector.detect(text)
        lines = [c.start_line for c in outline.chapters]
        assert lines == sorted(lines)
        assert [c.title for c in outline.chapters] == ["Cell Biology", "Energy", "Waves"]

    def test_chapter_cap_keeps_most_confident_in_order(self):
        heuristic = ["Cell Biology", "Plant Growth", "Animal Behavior", "Genetic Drift", "Ocean Currents"]
        lines = []
        for n in range(1, 49):
            lines.append(f"Chapter {n}: Topic")
            if n % 10 == 0:
                lines.append(heuristic[n // 10 - 1])
        lines.append(heuristic[4])

        outline = StructureDetector(max_chapters=50).detect("\n".join(lines))

        assert len(outline.chapters) == 50
        assert sum(1 for c in outline.chapters if c.confidence == 0.95) == 48
        kept_heuristic = [c.title for c in outline.chapters if c.confidence == 0.70]
        assert kept_heuristic == ["Cell Biology", "Plant Growth"]
        positions = [c.start_line for c in outline.chapters]
        assert positions == sorted(positions)

    def test_cap_drops_sections_of_removed_chapters(self):
        text = "Chapter 1: One\n1.1 Kept\nCell Biology\n1.2 Dropped\nChapter 2: Two\n2.1 Also Kept"
        outline = StructureDetector(max_chapters=2).detect(text)
        assert [c.title for c in outline.chapters] == ["One", "Two"]
        assert [s.title for s in outline.sections] == ["Kept", "Also Kept"]

    def test_page_estimates_and_end_pages(self, detector):
        lines = ["Chapter 1: One"] + ["filler text line."] * 59
        lines += ["Chapter 2: Two"] + ["filler text line."] * 39
        outline = detector.detect("\n".join(lines), page_count=4)

        first, second = outline.chapters
        assert (first.start_page, first.end_page) == (1, 2)
        assert (second.start_page, second.end_page) == (3, 4)

    def test_no_structure_adds_a_warning(self, detector):
        outline = detector.detect("just some plain lowercase text without any headings.")
        assert outline.chapters == []
        assert outline.sections == []
        assert outline.quality_score == 0.0
        assert outline.warnings
        assert not outline.has_structure
