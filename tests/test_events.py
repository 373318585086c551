"""Event CRUD, categories, dashboard stats and manual timeline entries."""

from datetime import timedelta

from backstage.auth import Role
from backstage.models import Event, EventUser, utcnow


class TestEventCrud:
    def test_create_makes_creator_admin(self, client, db, make_user, auth):
        ana = make_user()
        r = client.post(
            "/events",
            headers=auth(ana),
            json={"name": "Hackathon Fest", "date": "2025-11-30T20:00:00Z", "location": "Club Niceto"},
        )
        assert r.status_code == 201
        event = r.json()["event"]
        assert event["userRole"] == "ADMIN"
        assert event["is_archived"] is False

        link = db.query(EventUser).filter(EventUser.event_id == event["id"]).one()
        assert link.user_id == ana.id
        assert link.role == "ADMIN"

    def test_create_rejects_unparseable_date(self, client, make_user, auth):
        r = client.post(
            "/events",
            headers=auth(make_user()),
            json={"name": "Gig", "date": "next friday-ish", "location": "Bar"},
        )
        assert r.status_code == 400
        assert r.json()["error"] == "Invalid value for field 'date'"
        assert r.json()["details"][0]["field"] == "date"

    def test_create_rejects_blank_name(self, client, make_user, auth):
        r = client.post(
            "/events",
            headers=auth(make_user()),
            json={"name": "   ", "date": "2025-11-30T20:00:00Z", "location": "Bar"},
        )
        assert r.status_code == 400
        assert "name" in r.json()["error"]

    def test_list_only_joined_and_searchable(self, client, make_user, make_event, auth):
        ana, beto = make_user("Ana"), make_user("Beto")
        make_event(ana, name="Hackathon Fest", description="Main show")
        make_event(ana, name="Jazz Night", description="Small club")
        make_event(beto, name="Beto private party")

        r = client.get("/events", headers=auth(ana))
        names = [e["name"] for e in r.json()["events"]]
        assert sorted(names) == ["Hackathon Fest", "Jazz Night"]
        assert all(e["userRole"] == "ADMIN" for e in r.json()["events"])

        r = client.get("/events", params={"search": "club"}, headers=auth(ana))
        assert [e["name"] for e in r.json()["events"]] == ["Jazz Night"]

    def test_archived_events_hidden_everywhere(self, client, make_user, make_event, auth):
        ana = make_user()
        archived = make_event(ana, name="Old Gig", is_archived=True)

        assert client.get("/events", headers=auth(ana)).json()["events"] == []
        r = client.get(f"/events/{archived.id}", headers=auth(ana))
        assert r.status_code == 404
        assert r.json()["error"] == "Event not found"
        assert client.get(f"/events/{archived.id}/files", headers=auth(ana)).status_code == 404

    def test_get_event_includes_role(self, client, make_user, make_event, grant, auth):
        event = make_event(make_user("Ana"))
        staff = make_user("Beto")
        grant(event, staff, Role.STAFF)
        r = client.get(f"/events/{event.id}", headers=auth(staff))
        assert r.status_code == 200
        assert r.json()["event"]["userRole"] == "STAFF"

    def test_update_requires_manager(self, client, db, make_user, make_event, grant, auth):
        event = make_event(make_user("Ana"))
        staff, manager = make_user("Beto"), make_user("Cleo")
        grant(event, staff, Role.STAFF)
        grant(event, manager, Role.MANAGER)

        r = client.put(f"/events/{event.id}", headers=auth(staff), json={"location": "Stadium"})
        assert r.status_code == 403

        r = client.put(f"/events/{event.id}", headers=auth(manager), json={"location": "Stadium"})
        assert r.status_code == 200
        assert r.json()["event"]["location"] == "Stadium"
        assert r.json()["event"]["name"] == "Hackathon Fest"

    def test_archive_requires_admin_and_is_soft(self, client, db, make_user, make_event, grant, auth):
        ana = make_user("Ana")
        event = make_event(ana)
        manager = make_user("Cleo")
        grant(event, manager, Role.MANAGER)

        assert client.delete(f"/events/{event.id}", headers=auth(manager)).status_code == 403

        r = client.delete(f"/events/{event.id}", headers=auth(ana))
        assert r.json() == {"success": True}

        db.expire_all()
        row = db.get(Event, event.id)
        assert row is not None
        assert row.is_archived is True


class TestCategoriesAndStats:
    def test_categories_seeded(self, client, make_user, auth):
        r = client.get("/categories", headers=auth(make_user()))
        names = [c["name"] for c in r.json()["categories"]]
        assert set(names) == {"Schedules", "Technical", "Legal", "Staff", "Marketing"}

    def test_categories_require_auth(self, client):
        assert client.get("/categories").status_code == 401

    def test_stats_without_events(self, client, make_user, auth):
        r = client.get("/dashboard/stats", headers=auth(make_user()))
        assert r.json() == {"totalFiles": 0, "filesToday": 0, "lastUpdate": None, "showsToday": 0}

    def test_stats_counts_files_and_shows(self, client, make_user, make_event, add_document, auth):
        ana = make_user()
        event = make_event(ana)
        add_document(event, "Rider.txt", "Soundcheck at 16:30")
        add_document(event, "Guests.txt", "VIP list restricted")

        now = utcnow()
        client.post(
            f"/events/{event.id}/timeline",
            headers=auth(ana),
            json={"time": now.isoformat(), "description": "Main show", "type": "show"},
        )
        client.post(
            f"/events/{event.id}/timeline",
            headers=auth(ana),
            json={"time": (now + timedelta(days=3)).isoformat(), "description": "Encore", "type": "show"},
        )

        stats = client.get("/dashboard/stats", headers=auth(ana)).json()
        assert stats["totalFiles"] == 2
        assert stats["filesToday"] == 2
        assert stats["lastUpdate"] is not None
        assert stats["showsToday"] == 1


class TestTimelineEntries:
    def test_manager_can_create_and_list_in_time_order(self, client, make_user, make_event, auth):
        ana = make_user()
        event = make_event(ana)
        for time, desc, kind in [
            ("2025-11-30T22:15:00Z", "Los Algoritmos", "show"),
            ("2025-11-30T16:30:00Z", "Soundcheck", "soundcheck"),
        ]:
            r = client.post(
                f"/events/{event.id}/timeline",
                headers=auth(ana),
                json={"time": time, "description": desc, "type": kind},
            )
            assert r.status_code == 201

        entries = client.get(f"/events/{event.id}/timeline", headers=auth(ana)).json()["timeline"]
        assert [e["description"] for e in entries] == ["Soundcheck", "Los Algoritmos"]

    def test_unknown_type_rejected(self, client, make_user, make_event, auth):
        ana = make_user()
        event = make_event(ana)
        r = client.post(
            f"/events/{event.id}/timeline",
            headers=auth(ana),
            json={"time": "2025-11-30T16:30:00Z", "description": "Party", "type": "party"},
        )
        assert r.status_code == 400
        assert "type" in r.json()["error"]

    def test_staff_cannot_create(self, client, make_user, make_event, grant, auth):
        event = make_event(make_user("Ana"))
        staff = make_user("Beto")
        grant(event, staff, Role.STAFF)
        r = client.post(
            f"/events/{event.id}/timeline",
            headers=auth(staff),
            json={"time": "2025-11-30T16:30:00Z", "description": "Soundcheck", "type": "soundcheck"},
        )
        assert r.status_code == 403
