from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from hostdeck_backend.config import Settings
from hostdeck_backend.runtime_config import RuntimeConfigStore
from hostdeck_backend.slots import (
    DeployRejectedError,
    SlotLocks,
    SlotResolver,
    derive_slot_name,
    resolve_clone_url,
)


class SlotNameTests(unittest.TestCase):
    def test_derived_name_is_lowercased_and_sanitized(self) -> None:
        self.assertEqual(derive_slot_name("Demo_App"), "demo-app")
        self.assertEqual(derive_slot_name("acme/My.Site.git"), "my-site")
        self.assertEqual(derive_slot_name("git@github.com:acme/api-server.git"), "api-server")

    def test_clone_url_forms(self) -> None:
        self.assertEqual(resolve_clone_url("acme/demo-app", None), "https://github.com/acme/demo-app.git")
        self.assertEqual(resolve_clone_url("demo-app", "acme"), "https://github.com/acme/demo-app.git")
        self.assertEqual(
            resolve_clone_url("https://gitlab.example.com/team/app.git", None),
            "https://gitlab.example.com/team/app.git",
        )

    def test_bare_repo_without_owner_is_unresolvable(self) -> None:
        with self.assertRaises(DeployRejectedError) as ctx:
            resolve_clone_url("demo-app", None)
        self.assertEqual(ctx.exception.reason, "repo-unresolvable")

    def test_malformed_repo_is_unresolvable(self) -> None:
        for repo in ("", "   ", "a/b/c", "demo app", "../etc"):
            with self.assertRaises(DeployRejectedError) as ctx:
                resolve_clone_url(repo, "acme")
            self.assertEqual(ctx.exception.reason, "repo-unresolvable", repo)


class SlotLocksTests(unittest.TestCase):
    def test_acquire_is_exclusive_and_release_checks_owner(self) -> None:
        locks = SlotLocks()
        self.assertTrue(locks.acquire("demo-app", "deploy_1"))
        self.assertFalse(locks.acquire("demo-app", "deploy_2"))
        self.assertFalse(locks.release("demo-app", "deploy_2"))
        self.assertEqual(locks.holder("demo-app"), "deploy_1")
        self.assertTrue(locks.release("demo-app", "deploy_1"))
        self.assertFalse(locks.release("demo-app", "deploy_1"))
        self.assertIsNone(locks.holder("demo-app"))


class SlotResolverTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.www_root = Path(self._tmp.name) / "www"
        self.www_root.mkdir()
        self.runtime_config = RuntimeConfigStore(
            Settings(
                www_root=str(self.www_root),
                github_owner="acme",
                runtime_config_path=str(Path(self._tmp.name) / "runtime-config.json"),
            )
        )
        self.locks = SlotLocks()
        self.resolver = SlotResolver(www_root=self.www_root, runtime_config_store=self.runtime_config, locks=self.locks)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _reason(self, **kwargs: object) -> str:
        with self.assertRaises(DeployRejectedError) as ctx:
            self.resolver.resolve(**kwargs)  # type: ignore[arg-type]
        return ctx.exception.reason

    def test_fresh_slot_plans_clone_and_register(self) -> None:
        spec = self.resolver.resolve(repo="demo-app", port=3050, process_name="demo-app", branch="main", registered=set())
        self.assertEqual(spec.slot_key, "demo-app")
        self.assertEqual(spec.working_dir, self.www_root / "demo-app")
        self.assertEqual(spec.clone_url, "https://github.com/acme/demo-app.git")
        self.assertTrue(spec.fresh_checkout)
        self.assertFalse(spec.registered)
        self.assertEqual(spec.install_command, "npm install")
        self.assertEqual(spec.build_command, "npm run build")

    def test_existing_working_copy_plans_update(self) -> None:
        (self.www_root / "demo-app" / ".git").mkdir(parents=True)
        spec = self.resolver.resolve(repo="demo-app", port=3050, registered={"demo-app"})
        self.assertFalse(spec.fresh_checkout)
        self.assertTrue(spec.registered)

    def test_registration_falls_back_to_working_copy_probe(self) -> None:
        fresh = self.resolver.resolve(repo="demo-app", port=3050)
        self.assertFalse(fresh.registered)
        (self.www_root / "demo-app" / ".git").mkdir(parents=True)
        existing = self.resolver.resolve(repo="demo-app", port=3050)
        self.assertTrue(existing.registered)

    def test_supervisor_snapshot_overrides_working_copy_probe(self) -> None:
        (self.www_root / "demo-app" / ".git").mkdir(parents=True)
        spec = self.resolver.resolve(repo="demo-app", port=3050, registered={"something-else"})
        self.assertFalse(spec.fresh_checkout)
        self.assertFalse(spec.registered)

    def test_branch_defaults_to_runtime_config(self) -> None:
        self.runtime_config.update(default_branch="production")
        spec = self.resolver.resolve(repo="demo-app", port=3050)
        self.assertEqual(spec.branch, "production")

    def test_derives_process_name_from_repo(self) -> None:
        spec = self.resolver.resolve(repo="acme/Shop_Front", port=3050, process_name="  ")
        self.assertEqual(spec.slot_key, "shop-front")

    def test_explicit_name_is_lowercased(self) -> None:
        spec = self.resolver.resolve(repo="demo-app", port=3050, process_name="Demo-App")
        self.assertEqual(spec.slot_key, "demo-app")

    def test_rejections(self) -> None:
        self.assertEqual(self._reason(repo="demo-app", port=3050, process_name="demo_app"), "invalid-name")
        self.assertEqual(self._reason(repo="demo-app", port=3050, process_name="-rf"), "invalid-name")
        self.assertEqual(self._reason(repo="___", port=3050), "invalid-name")
        self.assertEqual(self._reason(repo="demo-app", port=0), "invalid-port")
        self.assertEqual(self._reason(repo="demo-app", port=70000), "invalid-port")
        self.assertEqual(self._reason(repo="demo-app", port=True), "invalid-port")
        self.assertEqual(self._reason(repo="demo-app", port=3050, branch="main;rm -rf /"), "invalid-branch")
        self.assertEqual(self._reason(repo="demo-app", port=3050, branch="../main"), "invalid-branch")
        self.assertEqual(self._reason(repo="not a repo", port=3050), "repo-unresolvable")

    def test_occupied_slot_is_rejected_without_side_effects(self) -> None:
        self.locks.acquire("demo-app", "deploy_running")
        self.assertEqual(self._reason(repo="demo-app", port=3050), "slot-occupied")
        self.assertEqual(self.locks.holder("demo-app"), "deploy_running")
        self.assertFalse((self.www_root / "demo-app").exists())


if __name__ == "__main__":
    unittest.main()
