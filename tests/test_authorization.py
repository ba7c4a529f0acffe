"""
End-to-end authorization through `Authorizer`.

alice is the tenant (node owner); bob and carol are other DIDs. The social
protocol from conftest is installed on alice's node.
"""

import asyncio
import json

import pytest

from dwn import jws
from dwn.authorization import Authorizer, Decision, authorize_message
from dwn.cid import data_cid
from dwn.core import b64url_encode, jcs_canonicalize
from dwn.errors import StoreError
from dwn.messages import (
    create_permissions_request,
    create_permissions_revoke,
    create_protocols_configure,
    create_protocols_query,
    create_records_delete,
    create_records_query,
    create_records_read,
    create_records_write,
    Authorization,
    message_from_json,
    update_records_write,
)
from dwn.permissions import create_grant
from dwn.protocols import PERMISSIONS_PROTOCOL
from dwn.store import InMemoryRecordStore, Record

from conftest import SOCIAL_PROTOCOL, THREAD_SCHEMA, keyring_for


T0 = "2026-01-01T00:00:00.000000Z"
T1 = "2026-01-02T00:00:00.000000Z"
T2 = "2026-01-03T00:00:00.000000Z"
T3 = "2026-01-04T00:00:00.000000Z"
T_EXPIRES = "2026-06-01T00:00:00.000000Z"


@pytest.fixture
def node(alice, store, config, social_definition):
    store.put_configure(create_protocols_configure(alice, social_definition, message_timestamp=T0))
    return Authorizer(alice.did, store, config=config)


def run(authorizer, message, **kwargs):
    return asyncio.run(authorizer.authorize(message, **kwargs))


def assert_rejected(decision, code, status):
    assert not decision.accepted, "expected a rejection"
    assert decision.error.code == code, decision.reason
    assert decision.status_code == status


def _post(keyring, ts=T1, **kwargs):
    return create_records_write(
        keyring, data=b'{"title":"hi"}', protocol=SOCIAL_PROTOCOL, protocol_path="post",
        message_timestamp=ts, **kwargs
    )


def _reply(keyring, post, ts=T2, **kwargs):
    return create_records_write(
        keyring, data=b'{"text":"re"}', protocol=SOCIAL_PROTOCOL, protocol_path="post/reply",
        parent=post, message_timestamp=ts, **kwargs
    )


def _thread(keyring, ts=T1):
    return create_records_write(
        keyring, data=b"{}", protocol=SOCIAL_PROTOCOL, protocol_path="thread",
        schema=THREAD_SCHEMA, message_timestamp=ts,
    )


def _participant(keyring, thread, recipient, ts=T1):
    return create_records_write(
        keyring, data=b"{}", protocol=SOCIAL_PROTOCOL, protocol_path="thread/participant",
        parent=thread, recipient=recipient.did, message_timestamp=ts,
    )


# =============================================================================
# GRANTS AND RULES END TO END
# =============================================================================

class TestEndToEnd:

    SOCIAL_WRITE = {"interface": "Records", "method": "Write", "protocol": SOCIAL_PROTOCOL}

    def test_anyone_may_create_post(self, node, bob):
        """An `anyone` create rule admits any signer."""
        message = _post(bob)
        decision = run(node, message)
        assert decision.accepted
        assert decision.actor.did == bob.did
        assert decision.to_reply(message) == {
            "status": {"code": 202, "detail": "Accepted"},
            "descriptor": message.descriptor,
        }

    def test_reply_requires_post_author(self, node, store, bob, carol):
        """Only the author of a post may reply to it."""
        post = _post(carol)
        store.put_write(post)

        decision = run(node, _reply(bob, post))
        assert_rejected(decision, "ActionNotPermitted", 403)
        assert decision.error.actions == ("create",)
        assert decision.error.actor == bob.did

        assert run(node, _reply(carol, post)).accepted

    def test_write_grant_cannot_configure(self, node, alice, bob, social_definition):
        """A delegate holding a Records.Write grant cannot configure protocols."""
        grant = create_grant(
            alice, bob.did, {"interface": "Records", "method": "Write", "protocol": SOCIAL_PROTOCOL},
            T_EXPIRES, delegated=True, message_timestamp=T0,
        )
        configure = create_protocols_configure(
            bob, dict(social_definition, published=False), message_timestamp=T1, delegated_grant=grant,
        )
        assert_rejected(run(node, configure), "GrantScopeMismatch", 403)

    def test_revoked_grant(self, node, store, alice, bob):
        """A revocation rejects messages timestamped at or after it; earlier ones still pass."""
        grant = create_grant(
            alice, bob.did, {"interface": "Records", "method": "Write", "protocol": SOCIAL_PROTOCOL},
            T_EXPIRES, delegated=True, message_timestamp=T0,
        )
        store.put_revocation(create_permissions_revoke(alice, grant.record_id, message_timestamp=T2))

        before = run(node, _post(bob, ts=T1, delegated_grant=grant))
        assert before.accepted
        assert before.actor.did == alice.did
        assert before.actor.signer == bob.did

        assert_rejected(run(node, _post(bob, ts=T3, delegated_grant=grant)), "GrantRevoked", 403)

    def _relay(self, alice, bob, carol, scope, expires=T_EXPIRES):
        # alice -> bob -> carol
        issuer = create_grant(
            alice, bob.did, {"interface": "Records", "method": "Write"}, expires,
            delegated=True, message_timestamp=T0,
        )
        return issuer, create_grant(
            bob, carol.did, scope, T_EXPIRES, delegated=True, message_timestamp=T0, delegated_grant=issuer,
        )

    def test_relayed_grant(self, node, alice, bob, carol):
        _, nested = self._relay(alice, bob, carol, self.SOCIAL_WRITE)
        decision = run(node, _post(carol, delegated_grant=nested))
        assert decision.accepted
        assert decision.actor.did == alice.did
        assert decision.actor.signer == carol.did

    def test_relayed_grant_dies_with_its_root(self, node, store, alice, bob, carol):
        _, nested = self._relay(alice, bob, carol, self.SOCIAL_WRITE, expires=T2)
        assert_rejected(run(node, _post(carol, ts=T3, delegated_grant=nested)), "GrantExpired", 403)

        issuer, nested = self._relay(alice, bob, carol, self.SOCIAL_WRITE)
        store.put_revocation(create_permissions_revoke(alice, issuer.record_id, message_timestamp=T2))
        assert_rejected(run(node, _post(carol, ts=T3, delegated_grant=nested)), "GrantRevoked", 403)

    def test_relayed_grant_cannot_widen(self, node, alice, bob, carol, social_definition):
        issuer = create_grant(
            alice, bob.did, {"interface": "Records", "method": "Write", "protocol": PERMISSIONS_PROTOCOL},
            T_EXPIRES, delegated=True, message_timestamp=T0,
        )
        nested = create_grant(
            bob, carol.did, {"interface": "Protocols", "method": "Configure"}, T_EXPIRES,
            delegated=True, message_timestamp=T0, delegated_grant=issuer,
        )
        configure = create_protocols_configure(
            carol, dict(social_definition, published=False), message_timestamp=T1, delegated_grant=nested,
        )
        assert_rejected(run(node, configure), "GrantScopeMismatch", 403)


# =============================================================================
# INTEGRITY & SIGNATURES
# =============================================================================

class TestIntegrity:

    def test_tampered_descriptor(self, node, bob):
        message = _post(bob)
        forged = message.replace(descriptor=dict(message.descriptor, dataFormat="text/plain"))
        decision = run(node, forged)
        assert_rejected(decision, "IntegrityViolation", 400)

    def test_security_rejections_are_audited(self, node, bob, carol, store):
        message = _post(bob)
        run(node, message.replace(descriptor=dict(message.descriptor, dataFormat="text/plain")))
        post = _post(carol)
        store.put_write(post)
        run(node, _reply(bob, post))

        events = node.audit.events
        assert [e.error_code for e in events] == ["IntegrityViolation"]
        assert events[0].tenant == node.tenant
        assert node.audit.verify_chain()

    def test_tampered_data(self, node, bob):
        message = _post(bob)
        decision = run(node, message.replace(encoded_data="e30"))
        assert_rejected(decision, "IntegrityViolation", 400)

    def test_detached_data(self, node, bob):
        message = create_records_write(
            bob, data=b'{"title":"hi"}', protocol=SOCIAL_PROTOCOL, protocol_path="post",
            message_timestamp=T1, include_data=False,
        )
        assert run(node, message, data=b'{"title":"hi"}').accepted
        assert_rejected(run(node, message, data=b'{"title":"hx"}'), "IntegrityViolation", 400)

    def test_invalid_signature(self, node, bob, carol):
        message = _post(bob)
        other = _post(carol)
        entry = message.authorization.signature.signatures[0]
        swapped = jws.SignatureEntry(
            protected=entry.protected,
            signature=other.authorization.signature.signatures[0].signature,
        )
        envelope = jws.JwsEnvelope(payload=message.authorization.signature.payload, signatures=(swapped,))
        forged = message.replace(authorization=Authorization(signature=envelope))
        assert_rejected(run(node, forged), "SignatureInvalid", 401)

    def test_unresolvable_did(self, node, bob):
        message = create_records_query(bob, {"protocol": SOCIAL_PROTOCOL}, message_timestamp=T1)
        entry = message.authorization.signature.signatures[0]
        header = dict(entry.header(), kid="did:web:example.com#key-1")
        protected = b64url_encode(jcs_canonicalize(header))
        envelope = jws.JwsEnvelope(
            payload=message.authorization.signature.payload,
            signatures=(jws.SignatureEntry(protected=protected, signature=entry.signature),),
        )
        forged = message.replace(authorization=Authorization(signature=envelope))
        assert_rejected(run(node, forged), "DidNotFound", 401)

    def test_update_without_initial_write(self, node, bob):
        unstored = _post(bob)
        update = update_records_write(bob, unstored, data=b'{"title":"x"}', message_timestamp=T2)
        assert_rejected(run(node, update), "IntegrityViolation", 400)

    def test_update_cannot_change_immutable_fields(self, node, store, bob, carol):
        post = _post(carol, recipient=bob.did)
        store.put_write(post)
        moved = post.replace(descriptor=dict(post.descriptor, recipient=carol.did))
        update = update_records_write(carol, moved, message_timestamp=T2)
        decision = run(node, update)
        assert_rejected(decision, "IntegrityViolation", 400)
        assert "recipient" in decision.reason


# =============================================================================
# WIRE FORMAT
# =============================================================================

class TestWire:

    def test_wire_round_trip(self, node, bob):
        message = _post(bob)
        parsed = message_from_json(message.to_json())
        assert parsed == message
        assert asyncio.run(node.authorize_wire(json.loads(message.to_json()))).accepted

    def test_missing_authorization(self, node, bob):
        wire = _post(bob).to_dict()
        del wire["authorization"]
        assert_rejected(asyncio.run(node.authorize_wire(wire)), "MalformedAuthorization", 400)

    def test_missing_descriptor_field(self, node, bob):
        wire = _post(bob).to_dict()
        wire["descriptor"] = dict(wire["descriptor"])
        del wire["descriptor"]["dataCid"]
        assert_rejected(asyncio.run(node.authorize_wire(wire)), "MalformedDescriptor", 400)

    def test_unknown_method(self, node):
        wire = {"descriptor": {"interface": "Records", "method": "Explode", "messageTimestamp": T1}}
        decision = asyncio.run(node.authorize_wire(wire))
        assert_rejected(decision, "MalformedDescriptor", 400)
        assert decision.to_reply(wire)["descriptor"] == wire["descriptor"]


# =============================================================================
# RECORDS
# =============================================================================

class TestRecordsWrite:

    def test_owner_bypasses_rules(self, node, alice, bob):
        friend = create_records_write(
            alice, data=b"{}", protocol=SOCIAL_PROTOCOL, protocol_path="friend",
            recipient=bob.did, message_timestamp=T1,
        )
        assert run(node, friend).accepted

    def test_non_owner_blocked_by_rules(self, node, bob, carol):
        friend = create_records_write(
            bob, data=b"{}", protocol=SOCIAL_PROTOCOL, protocol_path="friend",
            recipient=carol.did, message_timestamp=T1,
        )
        assert_rejected(run(node, friend), "ActionNotPermitted", 403)

    def test_owner_still_bound_by_structure(self, node, alice):
        stray = create_records_write(
            alice, data=b"{}", protocol=SOCIAL_PROTOCOL, protocol_path="story", message_timestamp=T1,
        )
        assert_rejected(run(node, stray), "UnknownProtocolPath", 400)

    def test_unknown_protocol(self, node, bob):
        message = create_records_write(
            bob, data=b"{}", protocol="https://example.com/nothing", protocol_path="post", message_timestamp=T1,
        )
        assert_rejected(run(node, message), "ProtocolNotFound", 400)

    def test_unpublished_protocol(self, alice, bob, store, config, social_definition):
        store.put_configure(create_protocols_configure(
            alice, dict(social_definition, published=False), message_timestamp=T0,
        ))
        assert_rejected(run(Authorizer(alice.did, store, config=config), _post(bob)), "ProtocolNotPublished", 403)

        config.authorization.enforce_protocol_publication.set(False)
        assert run(Authorizer(alice.did, store, config=config), _post(bob)).accepted

    def test_supplied_definition_and_ancestry(self, alice, bob, carol, social_definition):
        empty = InMemoryRecordStore()
        post = _post(carol)
        decision = asyncio.run(authorize_message(
            _reply(carol, post), social_definition, [Record(initial_write=post, latest=post)], empty, tenant=alice.did,
        ))
        assert decision.accepted

    def test_missing_ancestor(self, node, carol):
        post = _post(carol)
        assert_rejected(run(node, _reply(carol, post)), "IntegrityViolation", 400)

    def test_recipient_co_update(self, node, store, bob, carol):
        post = _post(carol, recipient=bob.did)
        store.put_write(post)
        update = update_records_write(bob, post, data=b'{"title":"edited"}', message_timestamp=T2)
        assert run(node, update).accepted

    def test_stranger_cannot_update(self, node, store, alice, bob, carol):
        post = _post(carol, recipient=bob.did)
        store.put_write(post)
        dave = keyring_for("dave")
        update = update_records_write(dave, post, data=b'{"title":"edited"}', message_timestamp=T2)
        decision = run(node, update)
        assert_rejected(decision, "ActionNotPermitted", 403)
        assert decision.error.actions == ("co-update",)

    def test_write_to_deleted_record(self, node, store, carol):
        post = _post(carol)
        store.put_write(post)
        store.put_delete(create_records_delete(carol, post.record_id, message_timestamp=T2))
        update = update_records_write(carol, post, data=b'{"title":"x"}', message_timestamp=T3)
        assert_rejected(run(node, update), "RecordNotFound", 404)

    def test_role_record_unique_per_thread(self, node, store, bob, carol):
        thread = _thread(bob)
        store.put_write(thread)
        first = _participant(bob, thread, carol)
        assert run(node, first).accepted
        store.put_write(first)
        second = _participant(bob, thread, carol, ts=T2)
        assert_rejected(run(node, second), "MalformedDescriptor", 400)

    def test_context_role_write(self, node, store, bob, carol):
        thread = _thread(bob)
        store.put_write(thread)
        store.put_write(_participant(bob, thread, carol))
        message = create_records_write(
            carol, data=b'{"m":1}', protocol=SOCIAL_PROTOCOL, protocol_path="thread/message",
            parent=thread, tags={"topic": "hello"}, protocol_role="thread/participant", message_timestamp=T2,
        )
        assert run(node, message).accepted

        without_role = create_records_write(
            carol, data=b'{"m":2}', protocol=SOCIAL_PROTOCOL, protocol_path="thread/message",
            parent=thread, tags={"topic": "hello"}, message_timestamp=T2,
        )
        assert_rejected(run(node, without_role), "ActionNotPermitted", 403)

    def test_invoked_role_must_be_a_role(self, node, store, bob, carol):
        thread = _thread(bob)
        store.put_write(thread)
        message = create_records_write(
            carol, data=b'{"m":1}', protocol=SOCIAL_PROTOCOL, protocol_path="thread/message",
            parent=thread, tags={"topic": "hello"}, protocol_role="post", message_timestamp=T2,
        )
        assert_rejected(run(node, message), "MalformedAuthorization", 400)

    def test_non_protocol_write(self, node, store, alice, bob):
        plain = create_records_write(bob, data=b"{}", message_timestamp=T1)
        assert_rejected(run(node, plain), "ActionNotPermitted", 403)
        assert run(node, create_records_write(alice, data=b"{}", message_timestamp=T1)).accepted

        grant = create_grant(alice, bob.did, {"interface": "Records", "method": "Write"}, T_EXPIRES, message_timestamp=T0)
        store.put_write(grant)
        granted = create_records_write(bob, data=b"{}", message_timestamp=T1, permission_grant_id=grant.record_id)
        assert run(node, granted).accepted


class TestRecordsRead:

    def test_published_record_is_public(self, node, store, carol):
        post = _post(carol, published=True)
        store.put_write(post)
        assert run(node, create_records_read(None, post.record_id, message_timestamp=T2)).accepted

    def test_unpublished_record_is_private(self, node, store, carol):
        post = _post(carol)
        store.put_write(post)
        assert_rejected(run(node, create_records_read(None, post.record_id, message_timestamp=T2)), "ActionNotPermitted", 403)

    def test_author_and_recipient_may_read(self, node, store, bob, carol):
        post = _post(carol, recipient=bob.did)
        store.put_write(post)
        assert run(node, create_records_read(carol, post.record_id, message_timestamp=T2)).accepted
        assert run(node, create_records_read(bob, post.record_id, message_timestamp=T2)).accepted

    def test_friend_role_may_read(self, node, store, alice, bob, carol):
        post = _post(carol)
        store.put_write(post)
        store.put_write(create_records_write(
            alice, data=b"{}", protocol=SOCIAL_PROTOCOL, protocol_path="friend",
            recipient=bob.did, message_timestamp=T1,
        ))
        read = create_records_read(bob, post.record_id, protocol_role="friend", message_timestamp=T2)
        assert run(node, read).accepted

    def test_reply_readable_by_post_author(self, node, store, bob, carol):
        post = _post(carol, recipient=bob.did)
        store.put_write(post)
        reply = _reply(bob, post)
        store.put_write(reply)
        assert run(node, create_records_read(carol, reply.record_id, message_timestamp=T3)).accepted
        dave = keyring_for("dave")
        assert_rejected(
            run(node, create_records_read(dave, reply.record_id, message_timestamp=T3)), "ActionNotPermitted", 403,
        )

    def test_missing_record(self, node, bob):
        missing = data_cid(b"nothing here")
        assert_rejected(run(node, create_records_read(bob, missing, message_timestamp=T2)), "RecordNotFound", 404)


class TestRecordsDelete:

    def test_author_may_delete(self, node, store, carol):
        post = _post(carol)
        store.put_write(post)
        assert run(node, create_records_delete(carol, post.record_id, message_timestamp=T2)).accepted

    def test_stranger_may_not_delete(self, node, store, bob, carol):
        post = _post(carol)
        store.put_write(post)
        decision = run(node, create_records_delete(bob, post.record_id, message_timestamp=T2))
        assert_rejected(decision, "ActionNotPermitted", 403)
        assert decision.error.actions == ("co-delete",)

    def test_owner_may_delete(self, node, store, alice, carol):
        post = _post(carol)
        store.put_write(post)
        assert run(node, create_records_delete(alice, post.record_id, message_timestamp=T2)).accepted

    def test_already_deleted(self, node, store, carol):
        post = _post(carol)
        store.put_write(post)
        store.put_delete(create_records_delete(carol, post.record_id, message_timestamp=T2))
        assert_rejected(
            run(node, create_records_delete(carol, post.record_id, message_timestamp=T3)), "RecordNotFound", 404,
        )


class TestRecordsQuery:

    def _setup(self, store, bob, carol):
        thread = _thread(bob)
        store.put_write(thread)
        store.put_write(_participant(bob, thread, carol))
        return thread

    def test_role_query(self, node, store, bob, carol):
        thread = self._setup(store, bob, carol)
        query = create_records_query(
            carol,
            {"protocol": SOCIAL_PROTOCOL, "protocolPath": "thread/message", "contextId": thread.context_id},
            protocol_role="thread/participant",
            message_timestamp=T2,
        )
        assert run(node, query).accepted

    def test_role_query_without_role_record(self, node, store, alice, bob, carol):
        thread = self._setup(store, bob, carol)
        query = create_records_query(
            bob,
            {"protocol": SOCIAL_PROTOCOL, "protocolPath": "thread/message", "contextId": thread.context_id},
            protocol_role="thread/participant",
            message_timestamp=T2,
        )
        assert_rejected(run(node, query), "ActionNotPermitted", 403)

    def test_role_query_needs_protocol_path(self, node, store, bob, carol):
        self._setup(store, bob, carol)
        query = create_records_query(
            carol, {"protocol": SOCIAL_PROTOCOL}, protocol_role="thread/participant", message_timestamp=T2,
        )
        assert_rejected(run(node, query), "MalformedDescriptor", 400)

    def test_context_role_query_needs_context(self, node, store, bob, carol):
        self._setup(store, bob, carol)
        query = create_records_query(
            carol, {"protocol": SOCIAL_PROTOCOL, "protocolPath": "thread/message"},
            protocol_role="thread/participant", message_timestamp=T2,
        )
        assert_rejected(run(node, query), "MalformedDescriptor", 400)

    def test_plain_queries_are_filtered_not_rejected(self, node):
        assert run(node, create_records_query(None, {"protocol": SOCIAL_PROTOCOL}, message_timestamp=T2)).accepted


# =============================================================================
# PROTOCOLS & PERMISSIONS
# =============================================================================

class TestProtocolsAndPermissions:

    def test_owner_configures(self, node, alice, social_definition):
        assert run(node, create_protocols_configure(alice, social_definition, message_timestamp=T1)).accepted

    def test_non_owner_cannot_configure(self, node, bob, social_definition):
        decision = run(node, create_protocols_configure(bob, social_definition, message_timestamp=T1))
        assert_rejected(decision, "ActionNotPermitted", 403)

    def test_configure_with_stored_grant(self, node, store, alice, bob, social_definition):
        grant = create_grant(alice, bob.did, {"interface": "Protocols", "method": "Configure"}, T_EXPIRES, message_timestamp=T0)
        store.put_write(grant)
        configure = create_protocols_configure(
            bob, social_definition, message_timestamp=T1, permission_grant_id=grant.record_id,
        )
        assert run(node, configure).accepted

    def test_invalid_definition(self, node, alice, social_definition):
        social_definition["structure"]["post"]["$actions"].append({"role": "post", "can": ["read", "query", "subscribe"]})
        decision = run(node, create_protocols_configure(alice, social_definition, message_timestamp=T1))
        assert_rejected(decision, "MalformedDescriptor", 400)

    def test_permissions_protocol_is_reserved(self, node, alice):
        definition = {"protocol": PERMISSIONS_PROTOCOL, "published": True, "types": {}, "structure": {}}
        assert_rejected(
            run(node, create_protocols_configure(alice, definition, message_timestamp=T1)), "MalformedDescriptor", 400,
        )

    def test_protocols_query_is_open(self, node):
        decision = run(node, create_protocols_query(None, SOCIAL_PROTOCOL, message_timestamp=T1))
        assert decision.accepted
        assert decision.actor.is_anonymous

    def test_permission_request(self, node, bob):
        request = create_permissions_request(
            bob, {"interface": "Records", "method": "Write", "protocol": SOCIAL_PROTOCOL}, message_timestamp=T1,
        )
        assert run(node, request).accepted

    def test_revoke(self, node, store, alice, bob):
        grant = create_grant(alice, bob.did, {"interface": "Records", "method": "Write"}, T_EXPIRES, message_timestamp=T0)
        store.put_write(grant)
        assert run(node, create_permissions_revoke(alice, grant.record_id, message_timestamp=T1)).accepted
        assert_rejected(
            run(node, create_permissions_revoke(bob, grant.record_id, message_timestamp=T1)), "ActionNotPermitted", 403,
        )

    def test_revoke_unknown_grant(self, node, alice):
        revoke = create_permissions_revoke(alice, data_cid(b"no such grant"), message_timestamp=T1)
        assert_rejected(run(node, revoke), "GrantNotFound", 403)

    def test_owner_issues_grant(self, node, alice, bob):
        grant = create_grant(alice, bob.did, {"interface": "Records", "method": "Read"}, T_EXPIRES, message_timestamp=T1)
        assert run(node, grant).accepted

    def test_stranger_cannot_issue_grant(self, node, bob, carol):
        grant = create_grant(bob, carol.did, {"interface": "Records", "method": "Read"}, T_EXPIRES, message_timestamp=T1)
        assert_rejected(run(node, grant), "ActionNotPermitted", 403)


# =============================================================================
# FAILURE PROPAGATION
# =============================================================================

class FlakyStore(InMemoryRecordStore):

    async def get_protocol_definition(self, protocol):
        raise StoreError("backend unavailable")


class TestFailures:

    def test_store_errors_propagate(self, alice, bob, config):
        authorizer = Authorizer(alice.did, FlakyStore(), config=config)
        with pytest.raises(StoreError):
            run(authorizer, _post(bob))

    def test_decision_reply_for_rejection(self, node, bob):
        plain = create_records_write(bob, data=b"{}", message_timestamp=T1)
        decision = run(node, plain)
        reply = decision.to_reply(plain)
        assert reply["status"]["code"] == 403
        assert reply["status"]["detail"].startswith("ActionNotPermitted:")
        assert reply["descriptor"] == plain.descriptor

    def test_decision_helpers(self):
        from dwn.errors import RecordNotFound
        from dwn.permissions import EffectiveActor

        accepted = Decision.accept(EffectiveActor.anonymous())
        assert accepted.status_code == 202
        assert accepted.reason is None
        rejected = Decision.reject(RecordNotFound("gone"))
        assert rejected.status_code == 404
        assert rejected.reason == "RecordNotFound: gone"
