"""Tests for the sync worker."""

import dataclasses
import json
from unittest.mock import MagicMock

import pytest

from regmirror.backup.keys import dist_tag_key, package_file_key, tarball_key, unpublish_key
from regmirror.common.errors import BackupKeyMissing
from regmirror.sync.documents import render_package
from regmirror.sync.reconciler import PUBLISHED_LOCALLY
from regmirror.sync.worker import SyncModuleWorker, SyncTarget

from tests.factories import run_sync, tarball_content, tarball_path


def _versions(package_service, name):
    return [row.version for row in package_service.list_modules_by_name(name)]


class TestFrontier:
    """Tests for queueing names."""

    def test_duplicates_ignored(self, sync_context, fake_registry):
        """Test a name is processed once per run however often it is queued."""
        fake_registry.publish("pkg", "1.0.0")
        worker = SyncModuleWorker(["pkg", "pkg", " pkg "], "admin", sync_context)

        assert worker.pending == ["pkg"]
        assert worker.enqueue("pkg") is False

        worker.start()
        assert worker.wait(timeout=30)

        assert worker.successes == ["pkg"]
        assert worker.failures == []
        assert fake_registry.requested().count("/pkg") == 1

    def test_enqueue_after_end_ignored(self, sync_context, fake_registry):
        worker = run_sync(sync_context, "missing")

        assert worker.ended
        assert worker.add("other") is False

    def test_type_validated(self, sync_context):
        assert SyncModuleWorker("bob", "admin", sync_context, type="user").type is SyncTarget.USER
        with pytest.raises(ValueError):
            SyncModuleWorker("pkg", "admin", sync_context, type="team")

    def test_start_twice(self, sync_context, fake_registry):
        fake_registry.publish("pkg", "1.0.0")
        worker = SyncModuleWorker("pkg", "admin", sync_context)

        worker.start()
        worker.start()
        assert worker.wait(timeout=30)

        assert worker.successes == ["pkg"]

    def test_concurrency_from_config(self, make_context):
        context = make_context(concurrency=3)

        assert SyncModuleWorker("pkg", "admin", context).concurrency == 3
        assert SyncModuleWorker("pkg", "admin", context, concurrency=1).concurrency == 1


class TestEndSignal:
    """Tests for end-of-run notification."""

    def test_on_end_called_once(self, sync_context, fake_registry):
        fake_registry.publish("pkg", "1.0.0")
        calls = []
        worker = SyncModuleWorker("pkg", "admin", sync_context)
        worker.on_end(calls.append)

        worker.start()
        assert worker.wait(timeout=30)

        assert calls == [worker]

    def test_on_end_after_finish(self, sync_context):
        worker = run_sync(sync_context, "missing")
        calls = []

        worker.on_end(calls.append)

        assert calls == [worker]

    def test_failing_callback_does_not_block_end(self, sync_context):
        worker = SyncModuleWorker("missing", "admin", sync_context)
        worker.on_end(MagicMock(side_effect=RuntimeError("boom")))

        worker.start()

        assert worker.wait(timeout=30)


class TestModuleSync:
    """Tests for syncing packages."""

    def test_first_sync_then_idempotent(self, sync_context, fake_registry, package_service):
        """Test a second sync of an unchanged package writes nothing."""
        fake_registry.publish("pkg", "1.0.0")
        fake_registry.publish("pkg", "1.1.0")

        first = run_sync(sync_context, "pkg")
        document, etag = render_package(package_service, "pkg")

        assert first.results["pkg"].changed_versions == ["1.0.0", "1.1.0"]
        assert first.results["pkg"].changed_count == 2
        assert document["dist-tags"] == {"latest": "1.1.0"}

        second = run_sync(sync_context, "pkg")
        _, second_etag = render_package(package_service, "pkg")

        assert second.successes == ["pkg"]
        assert second.results["pkg"].changed_count == 0
        assert second_etag == etag

    def test_static_sync(self, sync_context, fake_registry):
        fake_registry.publish("pkg", "1.0.0", dependencies={"dep": "^1.0.0"})
        fake_registry.publish("dep", "1.0.0")

        assert SyncModuleWorker.sync("pkg", "admin", sync_context) == 1
        assert SyncModuleWorker.sync("pkg", "admin", sync_context) == 0
        assert "/dep" not in fake_registry.requested()

    def test_private_packages_skipped(self, make_context, fake_registry, package_service):
        """Test private names succeed without touching upstream."""
        context = make_context(private_packages=["secret"], private_scopes=["@corp"])
        fake_registry.publish("secret", "1.0.0")

        worker = run_sync(context, ["secret", "@corp/tool"])

        assert sorted(worker.successes) == ["@corp/tool", "secret"]
        assert worker.results["secret"].skipped
        assert fake_registry.requests == []
        assert package_service.list_modules_by_name("secret") == []

    def test_not_found_is_success(self, sync_context):
        worker = run_sync(sync_context, "missing")

        assert worker.successes == ["missing"]
        assert worker.results["missing"].not_found
        assert worker.results["missing"].changed_count == 0

    def test_upstream_error_is_failure(self, sync_context, fake_registry):
        """Test one failing name does not stop the others."""
        fake_registry.publish("flaky", "1.0.0")
        fake_registry.publish("ok", "1.0.0")
        fake_registry.failing.add("/flaky")

        worker = run_sync(sync_context, ["flaky", "ok"])

        assert worker.failures == ["flaky"]
        assert worker.successes == ["ok"]
        assert "500" in worker.results["flaky"].error

    def test_dependencies_followed(self, sync_context, fake_registry):
        fake_registry.publish("app", "1.0.0", dependencies={"lib": "^1.0.0"}, optionalDependencies={"opt": "*"})
        fake_registry.publish("lib", "1.0.0", dependencies={"app": "^1.0.0"})
        fake_registry.publish("opt", "1.0.0")

        worker = run_sync(sync_context, "app")

        assert sorted(worker.successes) == ["app", "lib", "opt"]
        assert fake_registry.requested().count("/app") == 1

    def test_no_dep(self, sync_context, fake_registry):
        fake_registry.publish("app", "1.0.0", dependencies={"lib": "^1.0.0"})

        worker = run_sync(sync_context, "app", no_dep=True)

        assert worker.successes == ["app"]

    def test_private_dependency_not_queued(self, make_context, fake_registry):
        context = make_context(private_scopes=["@corp"])
        fake_registry.publish("app", "1.0.0", dependencies={"@corp/internal": "^1.0.0"})

        worker = run_sync(context, "app")

        assert worker.successes == ["app"]

    def test_removed_upstream_version(self, sync_context, fake_registry, package_service):
        fake_registry.publish("pkg", "1.0.0")
        fake_registry.publish("pkg", "2.0.0")
        run_sync(sync_context, "pkg")
        fake_registry.remove_version("pkg", "1.0.0")

        worker = run_sync(sync_context, "pkg")

        assert worker.results["pkg"].removed_versions == ["1.0.0"]
        assert _versions(package_service, "pkg") == ["2.0.0"]

    def test_undeprecate(self, make_context, fake_registry, package_service):
        """Test removing a deprecation upstream removes it locally."""
        context = make_context(enable_abbreviated_metadata=True)
        fake_registry.publish("pkg", "1.0.0", deprecated="use 2.x")
        run_sync(context, "pkg")
        assert package_service.show_package("pkg", "1.0.0").package["deprecated"] == "use 2.x"

        fake_registry.update_version("pkg", "1.0.0", deprecated=None)
        worker = run_sync(context, "pkg")

        assert worker.results["pkg"].changed_versions == ["1.0.0"]
        assert "deprecated" not in package_service.show_package("pkg", "1.0.0").package
        assert "deprecated" not in package_service.list_module_abbreviateds_by_name("pkg")[0].package

    def test_platform_fields_follow_upstream(self, make_context, fake_registry, package_service):
        """Test os, cpu and peerDependenciesMeta appear and disappear with upstream."""
        context = make_context(enable_abbreviated_metadata=True)
        fake_registry.publish("pkg", "1.0.0")
        run_sync(context, "pkg")

        fake_registry.update_version(
            "pkg", "1.0.0", os=["linux"], cpu=["arm64"], peerDependenciesMeta={"react": {"optional": True}}
        )
        run_sync(context, "pkg")
        abbreviated = package_service.list_module_abbreviateds_by_name("pkg")[0].package

        assert abbreviated["os"] == ["linux"]
        assert abbreviated["cpu"] == ["arm64"]
        assert abbreviated["peerDependenciesMeta"] == {"react": {"optional": True}}

        fake_registry.update_version("pkg", "1.0.0", os=None, cpu=None, peerDependenciesMeta=None)
        run_sync(context, "pkg")
        abbreviated = package_service.list_module_abbreviateds_by_name("pkg")[0].package
        full = package_service.show_package("pkg", "1.0.0").package

        assert "os" not in abbreviated and "os" not in full
        assert "cpu" not in abbreviated
        assert "peerDependenciesMeta" not in abbreviated

    def test_platform_fields_per_version(self, make_context, fake_registry, package_service):
        """Test each abbreviated version carries only the platform fields of its own record."""
        context = make_context(enable_abbreviated_metadata=True)
        peer_meta = {"react": {"optional": True}}
        fake_registry.publish("pkg", "1.0.0", os=["linux"], cpu=["x64"])
        fake_registry.publish("pkg", "2.0.0", os=["darwin"], cpu=["arm64"], peerDependenciesMeta=peer_meta)
        fake_registry.publish("pkg", "3.0.0", peerDependenciesMeta=peer_meta)

        run_sync(context, "pkg")
        abbreviateds = {
            row.version: row.package for row in package_service.list_module_abbreviateds_by_name("pkg")
        }

        assert sorted(abbreviateds) == ["1.0.0", "2.0.0", "3.0.0"]
        assert abbreviateds["1.0.0"]["os"] == ["linux"]
        assert abbreviateds["1.0.0"]["cpu"] == ["x64"]
        assert "peerDependenciesMeta" not in abbreviateds["1.0.0"]
        assert abbreviateds["2.0.0"]["os"] == ["darwin"]
        assert abbreviateds["2.0.0"]["cpu"] == ["arm64"]
        assert abbreviateds["2.0.0"]["peerDependenciesMeta"] == peer_meta
        assert "os" not in abbreviateds["3.0.0"]
        assert "cpu" not in abbreviateds["3.0.0"]
        assert abbreviateds["3.0.0"]["peerDependenciesMeta"] == peer_meta

        document, _ = render_package(package_service, "pkg", abbreviated=True)
        assert document["versions"] == abbreviateds
        assert document["dist-tags"] == {"latest": "3.0.0"}

    def test_abbreviated_etag_stable(self, make_context, fake_registry, package_service):
        context = make_context(enable_abbreviated_metadata=True)
        fake_registry.publish("pkg", "1.0.0", scripts={"postinstall": "node setup.js"})
        run_sync(context, "pkg")
        document, etag = render_package(package_service, "pkg", abbreviated=True)

        worker = run_sync(context, "pkg")

        assert worker.results["pkg"].changed_count == 0
        assert render_package(package_service, "pkg", abbreviated=True)[1] == etag
        assert document["versions"]["1.0.0"]["hasInstallScript"] is True

    def test_concurrent_workers_same_package(self, sync_context, fake_registry, package_service):
        fake_registry.publish("pkg", "1.0.0")
        workers = [SyncModuleWorker("pkg", f"user{i}", sync_context) for i in range(3)]

        for worker in workers:
            worker.start()
        for worker in workers:
            assert worker.wait(timeout=30)

        assert all(worker.successes == ["pkg"] for worker in workers)
        assert _versions(package_service, "pkg") == ["1.0.0"]
        assert sum(worker.results["pkg"].changed_count for worker in workers) == 1


class TestTarballs:
    """Tests for mirroring tarballs."""

    def test_tarball_mirrored(self, sync_context, fake_registry, package_service, blob_store):
        fake_registry.publish("@scope/pkg", "1.0.0")

        run_sync(sync_context, "@scope/pkg")

        key = tarball_key("@scope/pkg", "1.0.0")
        assert blob_store.download(key) == tarball_content("@scope/pkg", "1.0.0")
        assert package_service.show_package("@scope/pkg", "1.0.0").package["dist"]["key"] == key

    def test_missing_tarball_fails_name(self, sync_context, fake_registry, package_service):
        """Test versions with unavailable tarballs are skipped and the name fails."""
        fake_registry.publish("pkg", "1.0.0")
        fake_registry.publish("pkg", "1.1.0")
        del fake_registry.tarballs[tarball_path("pkg", "1.1.0")]

        worker = run_sync(sync_context, "pkg")

        assert worker.failures == ["pkg"]
        assert "1.1.0" in worker.results["pkg"].error
        assert _versions(package_service, "pkg") == ["1.0.0"]
        assert package_service.list_module_tags("pkg") == []

    def test_corrupt_tarball_rejected(self, sync_context, fake_registry, package_service):
        fake_registry.publish("pkg", "1.0.0")
        fake_registry.tarballs[tarball_path("pkg", "1.0.0")] = b"tampered!" * 10

        worker = run_sync(sync_context, "pkg")

        assert worker.failures == ["pkg"]
        assert package_service.list_modules_by_name("pkg") == []

    def test_tarballs_disabled(self, make_context, fake_registry, package_service):
        context = make_context(sync_tarballs=False)
        fake_registry.publish("pkg", "1.0.0")

        run_sync(context, "pkg")

        assert not any(path.endswith(".tgz") for path in fake_registry.requested())
        assert "key" not in package_service.show_package("pkg", "1.0.0").package["dist"]


class TestBackups:
    """Tests for backup records and restoring from them."""

    @pytest.fixture
    def context(self, make_context):
        return make_context(sync_backup_files=True)

    def test_backup_records_written(self, context, fake_registry, blob_store):
        """Test version records are JSON and dist-tags are plain version strings."""
        fake_registry.publish("pkg", "1.0.0")
        fake_registry.publish("pkg", "2.0.0-beta.1", tag="beta")

        run_sync(context, "pkg")

        record = json.loads(blob_store.download(package_file_key("pkg", "1.0.0")))
        assert record["version"] == "1.0.0"
        assert record["dist"]["key"] == tarball_key("pkg", "1.0.0")
        assert blob_store.download(dist_tag_key("pkg", "latest")) == b"1.0.0"
        assert blob_store.download(dist_tag_key("pkg", "beta")) == b"2.0.0-beta.1"

    def test_removed_tag_deletes_backup(self, context, fake_registry, blob_store):
        fake_registry.publish("pkg", "1.0.0")
        fake_registry.publish("pkg", "2.0.0-beta.1", tag="beta")
        run_sync(context, "pkg")

        del fake_registry.packages["pkg"]["dist-tags"]["beta"]
        run_sync(context, "pkg")

        with pytest.raises(BackupKeyMissing):
            blob_store.download(dist_tag_key("pkg", "beta"))
        assert blob_store.download(dist_tag_key("pkg", "latest")) == b"1.0.0"

    def test_removed_version_deletes_backup(self, context, fake_registry, blob_store):
        fake_registry.publish("pkg", "1.0.0")
        fake_registry.publish("pkg", "2.0.0")
        run_sync(context, "pkg")

        fake_registry.remove_version("pkg", "1.0.0")
        run_sync(context, "pkg")

        assert blob_store.list("/pkg/-/package/") == [package_file_key("pkg", "2.0.0")]

    def test_sync_from_backup(self, context, fake_registry, package_service):
        """Test a package is rebuilt from backups without contacting upstream."""
        fake_registry.publish("pkg", "1.0.0", description="stable")
        fake_registry.publish("pkg", "2.0.0-rc.1", tag="next", description="rc")
        run_sync(context, "pkg")
        expected, _ = render_package(package_service, "pkg")

        package_service.remove_modules("pkg")
        package_service.remove_module_tags("pkg")
        requests_before = len(fake_registry.requests)

        worker = run_sync(context, "pkg", sync_from_backup=True)
        restored, _ = render_package(package_service, "pkg")

        assert worker.successes == ["pkg"]
        assert len(fake_registry.requests) == requests_before
        assert restored["description"] == "stable"
        assert restored["dist-tags"] == {"latest": "1.0.0", "next": "2.0.0-rc.1"}
        assert restored["time"] == expected["time"]
        assert restored["versions"] == expected["versions"]

    def test_sync_from_missing_backup(self, context):
        worker = run_sync(context, "pkg", sync_from_backup=True)

        assert worker.successes == ["pkg"]
        assert worker.results["pkg"].not_found


class TestUnpublish:
    """Tests for packages unpublished upstream."""

    def test_unpublish_removes_local_versions(self, make_context, fake_registry, package_service, blob_store):
        context = make_context(sync_backup_files=True)
        fake_registry.publish("pkg", "1.0.0")
        run_sync(context, "pkg")

        fake_registry.unpublish("pkg")
        worker = run_sync(context, "pkg")

        assert worker.results["pkg"].unpublished
        assert worker.results["pkg"].removed_versions == ["1.0.0"]
        assert package_service.list_modules_by_name("pkg") == []
        assert package_service.list_module_tags("pkg") == []
        assert package_service.show_unpublished_module("pkg")["versions"] == ["1.0.0"]
        assert json.loads(blob_store.download(unpublish_key("pkg")))["versions"] == ["1.0.0"]

    def test_unpublish_from_backup(self, make_context, fake_registry, package_service, blob_store):
        context = make_context(sync_backup_files=True)
        fake_registry.publish("pkg", "1.0.0")
        run_sync(context, "pkg")
        blob_store.upload(unpublish_key("pkg"), json.dumps({"name": "alice", "versions": ["1.0.0"]}))

        worker = run_sync(context, "pkg", sync_from_backup=True)

        assert worker.results["pkg"].unpublished
        assert package_service.list_modules_by_name("pkg") == []

    def test_unpublish_removes_tarballs_and_backups(self, make_context, fake_registry, blob_store):
        context = make_context(sync_backup_files=True)
        fake_registry.publish("pkg", "1.0.0")
        run_sync(context, "pkg")
        assert blob_store.list("/pkg/-/package/") == [package_file_key("pkg", "1.0.0")]

        fake_registry.unpublish("pkg")
        run_sync(context, "pkg")

        assert blob_store.list("/pkg/-/package/") == []
        assert blob_store.list("/pkg/-/dist-tags/") == []
        with pytest.raises(BackupKeyMissing):
            blob_store.download(tarball_key("pkg", "1.0.0"))

    def test_republish_clears_unpublish_state(self, make_context, fake_registry, package_service, blob_store):
        """Test a package published again after an unpublish is live again, also on replay."""
        context = make_context(sync_backup_files=True)
        fake_registry.publish("pkg", "1.0.0")
        run_sync(context, "pkg")
        fake_registry.unpublish("pkg")
        run_sync(context, "pkg")
        assert package_service.show_unpublished_module("pkg") is not None

        fake_registry.publish("pkg", "2.0.0")
        worker = run_sync(context, "pkg")

        assert worker.successes == ["pkg"]
        assert _versions(package_service, "pkg") == ["2.0.0"]
        assert package_service.show_unpublished_module("pkg") is None
        with pytest.raises(BackupKeyMissing):
            blob_store.download(unpublish_key("pkg"))

        worker = run_sync(context, "pkg", sync_from_backup=True)

        assert not worker.results["pkg"].unpublished
        assert _versions(package_service, "pkg") == ["2.0.0"]
        assert package_service.show_unpublished_module("pkg") is None
        assert package_service.list_module_tags("pkg")[0].version == "2.0.0"
        with pytest.raises(BackupKeyMissing):
            blob_store.download("/pkg/-/pkg-1.0.0.tgz")

    def test_locally_published_package_kept(self, sync_context, fake_registry, package_service):
        package_service.save_module("pkg", "0.1.0", {"name": "pkg", "version": "0.1.0", PUBLISHED_LOCALLY: True})
        fake_registry.publish("pkg", "1.0.0")
        fake_registry.unpublish("pkg")

        worker = run_sync(sync_context, "pkg")

        assert worker.results["pkg"].skipped
        assert _versions(package_service, "pkg") == ["0.1.0"]


class TestCollaborators:
    """Tests for hooks, upstream cache refresh and run logs."""

    def test_global_hook_envelope(self, make_context, fake_registry):
        hook = MagicMock(return_value=None)
        context = make_context(global_hook=hook)
        fake_registry.publish("pkg", "1.0.0")

        run_sync(context, "pkg")

        hook.assert_called_once_with(
            {
                "event": "package:sync",
                "name": "pkg",
                "type": "package",
                "version": None,
                "payload": {"changedVersions": ["1.0.0"]},
            }
        )

    def test_global_hook_not_called_for_missing(self, make_context):
        hook = MagicMock(return_value=None)

        run_sync(make_context(global_hook=hook), "missing")

        hook.assert_not_called()

    def test_async_global_hook(self, make_context, fake_registry):
        received = []

        async def hook(envelope):
            received.append(envelope["name"])

        fake_registry.publish("pkg", "1.0.0")
        run_sync(make_context(global_hook=hook), "pkg")

        assert received == ["pkg"]

    def test_failing_hook_does_not_fail_name(self, make_context, fake_registry):
        fake_registry.publish("pkg", "1.0.0")

        worker = run_sync(make_context(global_hook=MagicMock(side_effect=RuntimeError("boom"))), "pkg")

        assert worker.successes == ["pkg"]

    def test_mirror_upstream_refreshed(self, make_context, fake_registry):
        fake_registry.publish("pkg", "1.0.0")

        run_sync(make_context(is_mirror=True), "pkg")

        assert fake_registry.sync_requests == ["pkg"]

    def test_refresh_failure_ignored(self, make_context, fake_registry):
        context = make_context(is_mirror=True)
        context.cache_refresher = MagicMock(side_effect=RuntimeError("down"))
        fake_registry.publish("pkg", "1.0.0")

        worker = run_sync(context, "pkg")

        assert worker.successes == ["pkg"]

    def test_run_log(self, sync_context, fake_registry, log_service):
        fake_registry.publish("pkg", "1.0.0")
        log_id = log_service.create("pkg", "admin")

        run_sync(sync_context, "pkg", log_id=log_id)

        log = log_service.get(log_id)
        assert "[pkg] synced" in log
        assert "1 successes" in log

    def test_unwritable_run_log_does_not_stop_run(self, sync_context, fake_registry, package_service):
        """Test a run finishes and syncs its names when the module log cannot be written."""
        context = dataclasses.replace(
            sync_context, log_service=MagicMock(append=MagicMock(side_effect=RuntimeError("db locked")))
        )
        fake_registry.publish("pkg", "1.0.0")
        ended = MagicMock(return_value=None)

        worker = SyncModuleWorker("pkg", "admin", context, log_id=1)
        worker.on_end(ended)
        worker.start()

        assert worker.wait(timeout=30)
        assert worker.successes == ["pkg"]
        assert _versions(package_service, "pkg") == ["1.0.0"]
        ended.assert_called_once_with(worker)

    def test_failure_recorded_when_error_logging_fails(self, sync_context):
        worker = SyncModuleWorker("pkg", "admin", sync_context)
        worker._sync_module = MagicMock(side_effect=ValueError("bad document"))
        worker.log = MagicMock(side_effect=RuntimeError("log down"))

        with pytest.raises(RuntimeError):
            worker._process("pkg")

        assert worker.failures == ["pkg"]
        assert worker.results["pkg"].error == "bad document"


class TestUserSync:
    """Tests for worker runs over user names."""

    def test_user_run(self, sync_context, fake_registry, user_service):
        fake_registry.add_user("carol")
        user_service.add("bob", "bob@example.com", password_sha="abc", salt="s")
        user_service.save_npm_user({"name": "dave"})

        worker = run_sync(sync_context, ["carol", "bob", "dave"], type="user")

        assert sorted(worker.successes) == ["bob", "carol", "dave"]
        assert worker.results["dave"].user_deleted
        assert user_service.find_by_name("bob") is not None
        assert user_service.find_by_name("carol").npm_user
        assert user_service.find_by_name("dave") is None
