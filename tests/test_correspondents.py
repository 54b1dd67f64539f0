# =============================================================================
# Correspondent Grouping Tests
# =============================================================================

from mailmirror.core import Address, SEEN_FLAG
from mailmirror.threads import (
    get_correspondent,
    group_by_correspondent,
    group_by_topic,
    is_from_user,
)

from conftest import make_body, make_header


ME = "me@example.com"


def _from(uid, sender, name="", **kwargs):
    return make_header(uid, from_=Address(sender, name), to=[Address(ME)], **kwargs)


def _to(uid, recipient, name="", **kwargs):
    return make_header(uid, from_=Address(ME, "Me"), to=[Address(recipient, name)], **kwargs)


def test_incoming_message_belongs_to_sender():
    ref = get_correspondent(_from(1, "Alice@Example.com", "Alice"), ME)
    assert ref.email == "alice@example.com"
    assert ref.name == "Alice"


def test_outgoing_message_belongs_to_first_recipient():
    message = _to(1, "bob@example.com", "Bob")
    assert is_from_user(message, "ME@example.com")
    assert get_correspondent(message, ME).email == "bob@example.com"


def test_outgoing_message_without_recipient_has_no_correspondent():
    message = make_header(1, from_=Address(ME), to=[])
    assert get_correspondent(message, ME).email == ""


def test_name_falls_back_to_address():
    assert get_correspondent(_from(1, "carol@example.com"), ME).name == "carol@example.com"


def test_every_keyed_message_lands_in_exactly_one_group():
    messages = [
        _from(1, "alice@example.com", "Alice"),
        _to(2, "alice@example.com"),
        _from(3, "bob@example.com"),
        _to(4, "BOB@example.com"),
        _from(5, "carol@example.com"),
        make_header(6, from_=Address(ME), to=[]),  # draft, no key
    ]
    groups = group_by_correspondent(messages, ME)

    assert set(groups) == {"alice@example.com", "bob@example.com", "carol@example.com"}
    assert sum(len(g.emails) for g in groups.values()) == 5

    seen = [m.uid for g in groups.values() for m in g.emails]
    assert sorted(seen) == [1, 2, 3, 4, 5]


def test_group_prefers_human_name_over_address():
    messages = [
        _to(1, "dave@example.com"),
        _from(2, "dave@example.com", "Dave Smith"),
        _from(3, "dave@example.com"),
    ]
    group = group_by_correspondent(messages, ME)["dave@example.com"]
    assert group.name == "Dave Smith"


def test_group_sorted_oldest_first_with_last_message_summary():
    newest = make_body(_from(9, "erin@example.com", "Erin", subject="Latest"), text="See you at five")
    messages = [newest, _from(2, "erin@example.com"), _to(5, "erin@example.com")]

    group = group_by_correspondent(messages, ME)["erin@example.com"]
    assert [m.uid for m in group.emails] == [2, 5, 9]
    assert group.last_message.subject == "Latest"
    assert group.last_message.preview == "See you at five"
    assert group.last_message.date == newest.date


def test_unread_count_ignores_seen_messages():
    messages = [
        _from(1, "frank@example.com", flags={SEEN_FLAG}),
        _from(2, "frank@example.com"),
        _from(3, "frank@example.com"),
    ]
    assert group_by_correspondent(messages, ME)["frank@example.com"].unread_count == 2


def test_group_by_topic_splits_on_normalised_subject():
    messages = [
        _from(1, "g@example.com", subject="Trip"),
        _to(2, "g@example.com", subject="Re: Trip"),
        _from(3, "g@example.com", subject="Invoice"),
    ]
    topics = group_by_topic(messages)

    assert set(topics) == {"Trip", "Invoice"}
    trip = topics["Trip"]
    assert [m.uid for m in trip.emails] == [1, 2]
    assert trip.original_subject == "Trip"
    assert trip.start == messages[0].date
    assert trip.end == messages[1].date
