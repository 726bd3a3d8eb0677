"""Tests for the role dashboards and onboarding."""

import pytest

from dashboards import DASHBOARDS, AdminDashboard, Onboarding, StaffDashboard, StudentDashboard, apply_filters
from errors import PermissionDeniedError
from forms import ComplaintForm
from models import FilterState
from queries import ONBOARDING_STEPS

DESCRIPTION = "The wifi in block C drops every evening after 7pm."


def submit(dashboard, title="WiFi not working", category="wifi", priority="medium"):
    return dashboard.submit(ComplaintForm(title=title, category_id=category, description=DESCRIPTION,
                                          priority=priority))


class TestStudentDashboard:
    def test_lists_only_own_complaints(self, queries, runner, signed_in, backend, catalog):
        student = StudentDashboard(queries, signed_in("student"), runner)
        submit(student)
        backend.seed("complaints", "other", user_id="someone-else", title="Hostel fan", status="pending")

        assert [c["title"] for c in student.list_complaints()] == ["WiFi not working"]
        assert student.stats() == {"pending": 1, "in_progress": 0, "resolved": 0}

    def test_active_filter_narrows_the_list(self, queries, runner, signed_in, catalog):
        student = StudentDashboard(queries, signed_in("student"), runner)
        submit(student, title="WiFi not working", priority="high")
        submit(student, title="Room door broken", category="rooms", priority="low")

        student.filters.set_active(FilterState(priority="high"))
        assert [c["title"] for c in student.visible_complaints()] == ["WiFi not working"]

        student.filters.set_active(FilterState(department="hostel"))
        assert [c["title"] for c in student.visible_complaints()] == ["Room door broken"]

    def test_detail_includes_history_and_comments(self, queries, runner, signed_in, catalog):
        student = StudentDashboard(queries, signed_in("student"), runner)
        row = submit(student)

        detail = student.detail(row["id"])

        assert detail["complaint"].status == "pending"
        assert detail["department_name"] == "IT Services"
        assert detail["status_log"] == []
        assert detail["comments"] == []

    def test_close_tears_down_threads(self, queries, runner, signed_in, backend):
        student = StudentDashboard(queries, signed_in("student"), runner)
        thread = student.open_thread("c1")
        assert student.open_threads == [thread]

        student.close()

        assert student.closed
        assert thread.closed
        assert student.open_threads == []
        assert all(not s.active for s in backend.subscriptions)

    def test_closing_a_thread_twice_unsubscribes_once(self, queries, runner, signed_in, backend):
        # dashboard teardown and the detail window's <Destroy> can both close it
        student = StudentDashboard(queries, signed_in("student"), runner)
        thread = student.open_thread("c1")

        student.close_thread(thread)
        student.close_thread(thread)

        assert thread.closed
        assert student.open_threads == []
        assert backend.calls["unsubscribe"] == 1
        assert not student.closed


class TestStaffDashboard:
    def test_sees_department_complaints_and_updates_status(self, queries, runner, signed_in, catalog):
        student = StudentDashboard(queries, signed_in("student"), runner)
        row = submit(student)
        staff = StaffDashboard(queries, signed_in("staff", department_id="it"), runner)

        assert [c["id"] for c in staff.list_complaints()] == [row["id"]]
        staff.update_status(row["id"], "resolved", "Router replaced")

        # the student's cached list went stale with the write
        assert student.list_complaints()[0]["status"] == "resolved"

    def test_no_department_means_empty_list(self, queries, runner, signed_in, catalog):
        student = StudentDashboard(queries, signed_in("student"), runner)
        submit(student)
        staff = StaffDashboard(queries, signed_in("staff"), runner)
        assert staff.list_complaints() == []

    def test_comment_refused_by_backend(self, queries, runner, signed_in, backend, catalog):
        staff = StaffDashboard(queries, signed_in("staff", department_id="hostel"), runner)
        backend.seed("complaints", "c1", user_id="u1", department_id="it", status="pending")
        backend.deny.add("comments")

        with pytest.raises(PermissionDeniedError):
            staff.add_comment("c1", "Checking")


class TestAdminDashboard:
    def test_sees_everything_and_manages_users(self, queries, runner, signed_in, backend, catalog):
        student_session = signed_in("student")
        submit(StudentDashboard(queries, student_session, runner))
        admin = AdminDashboard(queries, signed_in("admin"), runner)

        assert len(admin.list_complaints()) == 1
        assert admin.analytics()["total"] == 1

        admin.set_user_role(student_session.user.user_id, "staff")
        admin.set_user_department(student_session.user.user_id, "it")
        user = next(u for u in admin.users() if u["id"] == student_session.user.user_id)
        assert user["role"] == "staff"
        assert user["department_name"] == "IT Services"

    def test_analytics_refresh_after_submission(self, queries, runner, signed_in, catalog):
        admin = AdminDashboard(queries, signed_in("admin"), runner)
        assert admin.analytics()["total"] == 0
        submit(StudentDashboard(queries, signed_in("student"), runner))
        assert admin.analytics()["total"] == 1


class TestMisc:
    def test_dashboard_for_each_role(self):
        assert DASHBOARDS == {"student": StudentDashboard, "staff": StaffDashboard, "admin": AdminDashboard}

    def test_apply_filters_without_state(self):
        rows = [{"status": "pending"}]
        assert apply_filters(rows, None) == rows
        assert apply_filters(rows, FilterState(status="resolved")) == []

    def test_preferences_through_dashboard(self, queries, runner, signed_in):
        student = StudentDashboard(queries, signed_in("student"), runner)
        prefs = student.notification_preferences()
        prefs["status_updates"] = False
        student.save_notification_preferences(prefs)
        assert student.notification_preferences()["status_updates"] is False


class TestOnboarding:
    def test_walkthrough_to_completion(self, queries):
        tour = Onboarding(queries, "u1")
        assert tour.check()
        assert tour.step == ONBOARDING_STEPS[0]

        for _ in range(len(ONBOARDING_STEPS)):
            tour.next()

        assert not tour.open
        assert not queries.should_show_onboarding("u1")
        assert queries.onboarding("u1")["completed"]

    def test_progress_is_resumed(self, queries):
        tour = Onboarding(queries, "u1")
        tour.check()
        tour.next()

        again = Onboarding(queries, "u1")
        assert again.check()
        assert again.current_step == 1
        assert again.progress == 50.0

    def test_skip_hides_it(self, queries):
        tour = Onboarding(queries, "u1")
        tour.check()
        tour.skip()
        assert not Onboarding(queries, "u1").check()
