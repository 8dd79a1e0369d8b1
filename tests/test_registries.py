"""Tests for deterministic lab / course matching."""

from __future__ import annotations

from sage.src.core.registries import Course, Lab, append_learning_resources, format_courses, format_labs, get_courses_for_topic, get_labs_for_topic, load_courses, load_labs


def _lab(name: str, level: str, topics: list[str], platform: str = "PortSwigger") -> Lab:
    return Lab(name=name, url=f"https://labs.example/{name.replace(' ', '-')}", platform=platform, level=level, topics=topics)


def _course(name: str, level: str, topics: list[str], **extra) -> Course:
    return Course(name=name, url="https://courses.example", platform="OffSec", level=level, topics=topics, **extra)


LABS = [
    _lab("Intro XSS", "beginner", ["xss", "web"]),
    _lab("Advanced XSS", "expert", ["xss", "dom xss"]),
    _lab("Nmap basics", "beginner", ["nmap", "network"]),
    _lab("SSRF lab", "intermediate", ["ssrf", "cloud"]),
]


class TestLabMatching:
    def test_level_match(self):
        assert [lab.name for lab in get_labs_for_topic("xss", "beginner", LABS)] == ["Intro XSS"]
        assert [lab.name for lab in get_labs_for_topic("XSS", "expert", LABS)] == ["Advanced XSS"]


    def test_adjacent_level_fallback(self):
        assert [lab.name for lab in get_labs_for_topic("ssrf", "beginner", LABS)] == ["SSRF lab"]


    def test_expert_never_gets_beginner_labs(self):
        assert get_labs_for_topic("nmap", "expert", LABS) == []


    def test_weak_matches_are_dropped(self):
        assert get_labs_for_topic("javascript frameworks", "beginner", LABS) == []


    def test_at_most_five_in_registry_order(self):
        labs = [_lab(f"XSS {i}", "beginner", ["xss"]) for i in range(8)]
        assert [lab.name for lab in get_labs_for_topic("xss", "beginner", labs)] == [f"XSS {i}" for i in range(5)]


class TestCourseMatching:
    def test_certification_keyword_scores(self):
        courses = [_course("Penetration Testing with Kali", "intermediate", ["pentest"], certification="OSCP"), _course("Web Basics", "intermediate", ["web"])]
        assert [c.name for c in get_courses_for_topic("oscp prep", "intermediate", courses)] == ["Penetration Testing with Kali"]


    def test_at_most_three(self):
        courses = [_course(f"Web {i}", "beginner", ["web"]) for i in range(6)]
        assert len(get_courses_for_topic("web", "beginner", courses)) == 3


    def test_free_bonus_breaks_ties(self):
        courses = [_course("Paid Web", "beginner", ["web"]), _course("Free Web", "beginner", ["web"], free=True)]
        assert [c.name for c in get_courses_for_topic("web", "beginner", courses)] == ["Free Web", "Paid Web"]


class TestFormatting:
    def test_format_labs(self):
        assert format_labs([LABS[0]]) == "🌐 [Intro XSS](https://labs.example/Intro-XSS) 🟢"


    def test_format_courses(self):
        course = _course("PEN-200", "intermediate", ["pentest"], certification="OSCP", duration="90 days", free=False)
        assert format_courses([course]) == "📚 [PEN-200](https://courses.example) (OSCP) · 90 days"


    def test_append_nothing_when_empty(self):
        assert append_learning_resources("answer", [], []) == "answer"


    def test_append_sections(self):
        text = append_learning_resources("answer", [LABS[0]], [])
        assert text.startswith("answer\n\n**🔬 Hands-On Labs:**\n🌐 [Intro XSS]")
        assert "Recommended Courses" not in text


class TestBundledRegistries:
    def test_bundled_data_validates(self):
        labs = load_labs()
        courses = load_courses()
        assert len(labs) >= 20
        assert len(courses) >= 10
        assert all(lab.topics for lab in labs)


    def test_bundled_xss_beginner_match(self):
        assert any("scripting" in lab.name.lower() for lab in get_labs_for_topic("xss", "beginner"))
