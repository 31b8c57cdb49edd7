import asyncio
import threading
import unittest
from unittest.mock import Mock

from guestpass.exceptions import (
    ConcurrentUpdateException,
    DataValidationException,
    InvalidAuthTransitionException,
    PersistenceException,
    SignOutException,
)
from guestpass.models import AuthPhase, GateView, Session, UserProfile
from guestpass.repositories import InMemoryProfileStore, ProfileStore, SessionStore
from guestpass.services import AuthStateController, ViewScope, select_view


def session_store_for(session):
    store = Mock(spec=SessionStore)
    store.get_current_user.return_value = session
    return store


class TestAuthStateController(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.session = Session(user_id="u1", email="a@b.com", access_token="token-1")
        self.profiles = InMemoryProfileStore()

    async def test_starts_loading_and_resolves_once(self):
        controller = AuthStateController(session_store_for(self.session), self.profiles, "token-1")
        seen = []
        controller.subscribe(lambda state: seen.append(state.loading))

        self.assertTrue(controller.get_state().loading)
        await controller.load()
        await controller.load()

        self.assertFalse(controller.get_state().loading)
        self.assertEqual(seen, [False])

    async def test_no_session_is_unauthenticated_without_profile_calls(self):
        profiles = Mock(spec=ProfileStore)
        controller = AuthStateController(session_store_for(None), profiles)

        state = await controller.load()

        self.assertIs(state.phase, AuthPhase.UNAUTHENTICATED)
        self.assertIsNone(state.session)
        self.assertFalse(state.has_display_name)
        self.assertIs(select_view(state), GateView.LOGIN)
        profiles.ensure_profile.assert_not_called()
        profiles.get_profile.assert_not_called()
        profiles.save_display_name.assert_not_called()

    async def test_profile_upsert_skipped_without_email(self):
        profiles = Mock(spec=ProfileStore)
        profiles.get_profile.return_value = None
        session = Session(user_id="u2", email=None, access_token="token-2")
        controller = AuthStateController(session_store_for(session), profiles, "token-2")

        state = await controller.load()

        self.assertIs(state.phase, AuthPhase.INCOMPLETE)
        profiles.ensure_profile.assert_not_called()
        profiles.get_profile.assert_called_once_with("u2")

    async def test_profile_upsert_uses_email_as_fallback_name(self):
        profiles = Mock(spec=ProfileStore)
        profiles.get_profile.return_value = None
        controller = AuthStateController(session_store_for(self.session), profiles, "token-1")

        await controller.load()

        profiles.ensure_profile.assert_called_once_with(self.session, full_name="a@b.com", role="admin")

    async def test_session_check_failure_resolves_unauthenticated(self):
        store = Mock(spec=SessionStore)
        store.get_current_user.side_effect = RuntimeError("network down")
        controller = AuthStateController(store, self.profiles, "token-1")

        state = await controller.load()

        self.assertIs(state.phase, AuthPhase.UNAUTHENTICATED)

    async def test_missing_display_name_then_update(self):
        controller = AuthStateController(session_store_for(self.session), self.profiles, "token-1")

        state = await controller.load()
        self.assertIs(state.phase, AuthPhase.INCOMPLETE)
        self.assertIs(select_view(state), GateView.NAME_PROMPT)
        self.assertFalse(state.has_display_name)

        state = await controller.update_display_name("Alice")

        self.assertIs(state.phase, AuthPhase.READY)
        self.assertTrue(state.has_display_name)
        self.assertEqual(state.display_name, "Alice")
        self.assertEqual(self.profiles.get_profile("u1").display_name, "Alice")

    async def test_existing_display_name_is_ready(self):
        self.profiles.ensure_profile(self.session, full_name="Alice A", role="admin")
        self.profiles.save_display_name("u1", "Alice")
        controller = AuthStateController(session_store_for(self.session), self.profiles, "token-1")

        state = await controller.load()

        self.assertIs(state.phase, AuthPhase.READY)
        self.assertEqual(state.display_name, "Alice")
        self.assertIs(select_view(state), GateView.MAIN)

    async def test_ensure_profile_keeps_display_name(self):
        self.profiles.ensure_profile(self.session, full_name="a@b.com", role="admin")
        self.profiles.save_display_name("u1", "Alice")
        controller = AuthStateController(session_store_for(self.session), self.profiles, "token-1")

        await controller.load()

        self.assertEqual(self.profiles.get_profile("u1").display_name, "Alice")

    async def test_blank_name_is_rejected(self):
        controller = AuthStateController(session_store_for(self.session), self.profiles, "token-1")
        await controller.load()

        with self.assertRaises(DataValidationException):
            await controller.update_display_name("   ")

        self.assertIs(controller.get_state().phase, AuthPhase.INCOMPLETE)

    async def test_persistence_failure_leaves_state_unchanged(self):
        profiles = Mock(spec=ProfileStore)
        profiles.get_profile.return_value = UserProfile(user_id="u1", email="a@b.com")
        profiles.save_display_name.side_effect = PersistenceException("save_display_name", "timeout")
        controller = AuthStateController(session_store_for(self.session), profiles, "token-1")
        await controller.load()
        before = controller.get_state()

        with self.assertRaises(PersistenceException):
            await controller.update_display_name("Alice")

        self.assertEqual(controller.get_state(), before)
        self.assertFalse(controller.get_state().has_display_name)
        self.assertIsNone(controller.get_state().display_name)

    async def test_unexpected_store_error_becomes_persistence_error(self):
        profiles = Mock(spec=ProfileStore)
        profiles.get_profile.return_value = None
        profiles.save_display_name.side_effect = ConnectionError("reset")
        controller = AuthStateController(session_store_for(self.session), profiles, "token-1")
        await controller.load()

        with self.assertRaises(PersistenceException):
            await controller.update_display_name("Alice")
        self.assertIs(controller.get_state().phase, AuthPhase.INCOMPLETE)

    async def test_update_outside_incomplete_is_rejected(self):
        controller = AuthStateController(session_store_for(None), self.profiles)
        with self.assertRaises(InvalidAuthTransitionException):
            await controller.update_display_name("Alice")

        await controller.load()
        with self.assertRaises(InvalidAuthTransitionException):
            await controller.update_display_name("Alice")

    async def test_concurrent_update_is_rejected(self):
        release = threading.Event()
        profiles = Mock(spec=ProfileStore)
        profiles.get_profile.return_value = None

        def slow_save(user_id, name):
            release.wait(2)
            return UserProfile(user_id=user_id, display_name=name)

        profiles.save_display_name.side_effect = slow_save
        controller = AuthStateController(session_store_for(self.session), profiles, "token-1")
        await controller.load()

        first = asyncio.create_task(controller.update_display_name("Alice"))
        await asyncio.sleep(0)
        with self.assertRaises(ConcurrentUpdateException):
            await controller.update_display_name("Bob")

        release.set()
        state = await first
        self.assertEqual(state.display_name, "Alice")
        profiles.save_display_name.assert_called_once_with("u1", "Alice")

    async def test_sign_out_clears_local_state(self):
        store = session_store_for(self.session)
        controller = AuthStateController(store, self.profiles, "token-1")
        await controller.load()

        state = await controller.sign_out()

        self.assertIs(state.phase, AuthPhase.UNAUTHENTICATED)
        self.assertIsNone(state.session)
        self.assertIsNone(state.display_name)
        store.sign_out.assert_called_once_with("token-1")

    async def test_failed_remote_sign_out_still_clears_local_state(self):
        store = session_store_for(self.session)
        store.sign_out.side_effect = SignOutException("network down")
        self.profiles.ensure_profile(self.session, full_name="a@b.com", role="admin")
        self.profiles.save_display_name("u1", "Alice")
        controller = AuthStateController(store, self.profiles, "token-1")
        await controller.load()

        with self.assertRaises(SignOutException):
            await controller.sign_out()

        state = controller.get_state()
        self.assertIsNone(state.session)
        self.assertIsNone(state.display_name)
        self.assertIs(state.phase, AuthPhase.UNAUTHENTICATED)

    async def test_sign_out_while_loading_is_rejected(self):
        controller = AuthStateController(session_store_for(self.session), self.profiles, "token-1")
        with self.assertRaises(InvalidAuthTransitionException):
            await controller.sign_out()

    async def test_result_for_cancelled_scope_is_discarded(self):
        release = threading.Event()
        store = Mock(spec=SessionStore)

        def slow_check(token):
            release.wait(2)
            return self.session

        store.get_current_user.side_effect = slow_check
        controller = AuthStateController(store, self.profiles, "token-1")
        scope = ViewScope()

        pending = asyncio.create_task(controller.load(scope))
        await asyncio.sleep(0)
        scope.cancel()
        release.set()
        state = await pending

        self.assertTrue(state.loading)
        self.assertIs(controller.get_state().phase, AuthPhase.LOADING)

    async def test_refresh_runs_full_recheck(self):
        store = session_store_for(None)
        controller = AuthStateController(store, self.profiles)
        phases = []
        controller.subscribe(lambda state: phases.append(state.phase))
        await controller.load()

        store.get_current_user.return_value = self.session
        state = await controller.refresh(access_token="token-1")

        self.assertIs(state.phase, AuthPhase.INCOMPLETE)
        self.assertEqual(phases, [AuthPhase.UNAUTHENTICATED, AuthPhase.LOADING, AuthPhase.INCOMPLETE])
        store.get_current_user.assert_called_with("token-1")

    async def test_unsubscribe_stops_notifications(self):
        controller = AuthStateController(session_store_for(None), self.profiles)
        seen = []
        unsubscribe = controller.subscribe(seen.append)
        unsubscribe()

        await controller.load()

        self.assertEqual(seen, [])


if __name__ == '__main__':
    unittest.main()
