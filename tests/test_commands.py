import re

import pytest

import directory
from commands import (
    Broadcast,
    BroadcastMessage,
    ChannelCreated,
    ChannelDeleted,
    CommandInterpreter,
    UserRenamed,
)
from models import Group, Message, Ticket
from relay import MessageRelay


@pytest.fixture()
def interpreter():
    return CommandInterpreter(MessageRelay())


@pytest.fixture()
def users(make_user):
    return {
        "alice": make_user("alice"),
        "bob": make_user("bob"),
        "admin": make_user("Admin01", is_admin=True),
    }


def run(interpreter, db, user, line):
    return interpreter.execute(db, user, line)


def test_help_lists_every_command(db, interpreter, users):
    reply = run(interpreter, db, users["alice"], "/help").reply
    assert reply.startswith("Commands:")
    for verb in interpreter.commands:
        assert verb in reply


def test_unknown_verb(db, interpreter, users):
    assert run(interpreter, db, users["alice"], "/dance").reply == "Unknown command. Try /help"


def test_missing_argument_returns_usage(db, interpreter, users):
    assert run(interpreter, db, users["alice"], "/msg").reply == "Usage: /msg <username>"
    assert run(interpreter, db, users["alice"], "/ticket   ").reply == "Usage: /ticket <text>"


def test_group_scenario(db, interpreter, users):
    alice, bob = users["alice"], users["bob"]

    result = run(interpreter, db, alice, "/create_group devs")
    assert result.reply == "Group devs created"
    assert result.events == [ChannelCreated(chat="devs", audience=["alice"])]
    assert directory.list_members(db, "devs") == ["alice"]

    assert run(interpreter, db, bob, "/Gcode devs").reply == "You are not in this group"

    reply = run(interpreter, db, alice, "/Gcode devs").reply
    match = re.fullmatch(r"Group code: ([0-9]{3}[A-Z]{3}[0-9]{3}[A-Z])", reply)
    assert match
    code = match.group(1)

    result = run(interpreter, db, bob, f"/join_group {code}")
    assert result.reply == "Joined group devs"
    assert result.events == [ChannelCreated(chat="devs", audience=["bob"])]
    assert directory.is_member(db, "devs", "bob")

    assert run(interpreter, db, bob, f"/join_group {code}").reply == "Already in group"
    assert run(interpreter, db, alice, "/Gcode devs").reply == reply


def test_create_group_twice(db, interpreter, users):
    run(interpreter, db, users["alice"], "/create_group devs")
    result = run(interpreter, db, users["bob"], "/create_group devs")
    assert result.reply == "Group exists"
    assert result.events == []
    assert db.query(Group).filter(Group.name == "devs").count() == 1


def test_gcode_unknown_group(db, interpreter, users):
    assert run(interpreter, db, users["alice"], "/Gcode ghosts").reply == "Group not found"


def test_join_unknown_code(db, interpreter, users):
    assert run(interpreter, db, users["alice"], "/join_group 000AAA000A").reply == "Group not found"


def test_delete_group_only_by_owner(db, interpreter, users):
    alice, bob = users["alice"], users["bob"]
    run(interpreter, db, alice, "/create_group devs")
    directory.add_member(db, "devs", "bob")

    assert run(interpreter, db, bob, "/delete_group-channel devs").reply == "You are not owner"
    assert sorted(directory.list_members(db, "devs")) == ["alice", "bob"]

    result = run(interpreter, db, alice, "/delete_group-channel devs")
    assert result.reply == "Group deleted"
    assert isinstance(result.events[0], ChannelDeleted)
    assert sorted(result.events[0].audience) == ["alice", "bob"]
    assert directory.get_group(db, "devs") is None


def test_ucode_is_stable(db, interpreter, users):
    first = run(interpreter, db, users["alice"], "/Ucode").reply
    second = run(interpreter, db, users["alice"], "/Ucode").reply
    assert re.fullmatch(r"Your code: [a-z]{4}[A-Z]{2}-[0-9]{4}", first)
    assert first == second


def test_ucode_reports_exhausted_retries(db, users, monkeypatch):
    interpreter = CommandInterpreter(MessageRelay(), code_attempts=2)
    taken = directory.ensure_user_code(db, users["alice"])
    monkeypatch.setattr(directory, "generate_user_code", lambda: taken)
    assert run(interpreter, db, users["bob"], "/Ucode").reply == "Could not generate a code, try again"


def test_finduser(db, interpreter, users):
    code = directory.ensure_user_code(db, users["bob"])
    assert run(interpreter, db, users["alice"], f"/finduser {code}").reply == "Found: bob"

    result = run(interpreter, db, users["alice"], "/finduser BADCODE")
    assert result.reply == "User not found"
    assert result.events == []


def test_msg(db, interpreter, users):
    result = run(interpreter, db, users["bob"], "/msg alice")
    assert result.reply == "Opening chat with alice..."
    assert result.events == [ChannelCreated(chat="alice:bob", audience=["bob", "alice"], is_dm=True)]

    assert run(interpreter, db, users["bob"], "/msg bob").reply == "Can't message yourself"
    assert run(interpreter, db, users["bob"], "/msg nobody").reply == "User nobody not found"


def test_change_name(db, interpreter, users):
    result = run(interpreter, db, users["alice"], "/change_name alicia")
    assert result.reply == "Username changed to alicia"
    assert result.events == [UserRenamed(old="alice", new="alicia")]
    assert directory.get_user(db, "alicia") is not None

    assert run(interpreter, db, users["bob"], "/change_name alicia").reply == "Username taken"
    assert run(interpreter, db, users["bob"], "/change_name settings_bot").reply == "Invalid username"
    assert run(interpreter, db, users["bob"], "/change_name b@d!").reply == "Invalid username"


def test_ticket(db, interpreter, users):
    result = run(interpreter, db, users["alice"], "/ticket the  app crashed")
    assert result.reply == "Ticket sent"

    ticket = db.query(Ticket).one()
    assert (ticket.username, ticket.text) == ("alice", "the  app crashed")

    posted = [e for e in result.events if isinstance(e, BroadcastMessage)][0].message
    assert posted.chat == "tickets"
    assert posted.text == "[TICKET] the  app crashed"
    assert ChannelCreated(chat="tickets", audience=["Admin01"]) in result.events


def test_easter_egg(db, interpreter, users):
    result = run(interpreter, db, users["alice"], "/x")
    assert result.reply == ""
    assert result.events == [Broadcast("easter_egg")]


def test_commands_do_not_persist_anything_on_failure(db, interpreter, users):
    run(interpreter, db, users["alice"], "/finduser nope")
    run(interpreter, db, users["alice"], "/Gcode nope")
    assert db.query(Message).count() == 0


def test_create_group_rejects_dm_style_names(db, interpreter, users):
    assert run(interpreter, db, users["alice"], "/create_group alice:bob").reply == "Invalid group name"
    assert run(interpreter, db, users["alice"], "/create_group Settings").reply == "Invalid group name"
    assert db.query(Group).count() == 0


def test_change_name_to_admin_in_other_case(db, interpreter, users):
    assert run(interpreter, db, users["bob"], "/change_name admin01").reply == "Invalid username"
    assert run(interpreter, db, users["bob"], "/change_name TICKETS").reply == "Invalid username"
    assert directory.get_user(db, "bob") is not None


def test_ticket_failure_leaves_no_ticket(db, interpreter, users, monkeypatch):
    import relay as relay_module

    taken = interpreter.relay.post_bot_reply(db, "hello").id
    monkeypatch.setattr(relay_module, "gen_message_id", lambda ts: taken)

    assert run(interpreter, db, users["alice"], "/ticket help").reply == "Something went wrong, try again"
    assert db.query(Ticket).count() == 0
    assert db.query(Message).filter(Message.chat == "tickets").count() == 0
