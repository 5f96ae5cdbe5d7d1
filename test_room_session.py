"""
Room session state machine tests
"""

import pytest

from conftest import make_quiz
from shared.protocol import AnswerCommand, ChatCommand, Event, WhiteboardDrawCommand
from shared.room_session import RoomProtocolError, RoomSession, RoomState


def events(deliveries):
    return [d.event for d in deliveries]


@pytest.fixture
def room(quiz, p1):
    return RoomSession("R1", quiz, host_id=p1.user_id, settings={"timePerQuestion": 20})


@pytest.fixture
def playing_room(room, p1, p2):
    room.dispatch(Event.JOIN_ROOM.value, p1, "c1")
    room.dispatch(Event.JOIN_ROOM.value, p2, "c2")
    room.dispatch(Event.START_QUIZ.value, p1, "c1")
    return room


def suggest(room, actor, conn, answer):
    return room.dispatch(Event.SUGGEST_ANSWER.value, actor, conn, AnswerCommand(answer=answer))


def vote(room, actor, conn, answer):
    return room.dispatch(Event.VOTE_ANSWER.value, actor, conn, AnswerCommand(answer=answer))


class TestMembership:

    def test_join_sends_snapshot_to_joiner_and_roster_to_others(self, room, p1, p2):
        room.dispatch(Event.JOIN_ROOM.value, p1, "c1")
        deliveries = room.dispatch(Event.JOIN_ROOM.value, p2, "c2")

        joined, announced = deliveries
        assert joined.event == Event.ROOM_JOINED.value
        assert joined.to == "c2"
        assert joined.payload["room"]["roomId"] == "R1"
        assert joined.payload["room"]["status"] == "waiting"
        assert [p["id"] for p in joined.payload["room"]["players"]] == ["p1", "p2"]

        assert announced.event == Event.PLAYER_JOINED.value
        assert announced.exclude == "c2"
        assert announced.payload["player"] == {"id": "p2", "name": "Quinn", "avatar": "Q"}

    def test_rejoin_moves_participant_to_new_connection(self, room, p1):
        room.dispatch(Event.JOIN_ROOM.value, p1, "c1")
        room.dispatch(Event.JOIN_ROOM.value, p1, "c9")

        assert len(room.participants) == 1
        assert room.connection_ids() == ["c9"]

        # The superseded connection going away does not remove the participant
        assert room.dispatch(Event.LEAVE_ROOM.value, p1, "c1") == []
        assert "p1" in room.participants

    def test_leave_broadcasts_roster(self, room, p1, p2):
        room.dispatch(Event.JOIN_ROOM.value, p1, "c1")
        room.dispatch(Event.JOIN_ROOM.value, p2, "c2")

        deliveries = room.dispatch(Event.LEAVE_ROOM.value, p2, "c2")

        assert events(deliveries) == [Event.PLAYER_LEFT.value]
        assert deliveries[0].payload["playerId"] == "p2"
        assert [p["id"] for p in deliveries[0].payload["players"]] == ["p1"]

    def test_host_role_passes_to_longest_present_participant(self, room, p1, p2, host):
        room.dispatch(Event.JOIN_ROOM.value, p1, "c1")
        room.dispatch(Event.JOIN_ROOM.value, p2, "c2")
        room.dispatch(Event.JOIN_ROOM.value, host, "c3")

        deliveries = room.dispatch(Event.LEAVE_ROOM.value, p1, "c1")

        assert room.host_id == "p2"
        assert deliveries[0].payload["hostId"] == "p2"

    def test_next_joiner_hosts_a_room_the_host_left_empty(self, room, p1, p2, host):
        room.dispatch(Event.JOIN_ROOM.value, p1, "c1")
        room.dispatch(Event.LEAVE_ROOM.value, p1, "c1")
        assert room.host_id is None

        joined, _ = room.dispatch(Event.JOIN_ROOM.value, p2, "c2")
        assert joined.payload["room"]["hostId"] == "p2"

        announced = room.dispatch(Event.JOIN_ROOM.value, host, "c3")[1]
        assert announced.payload["hostId"] == "p2"

        assert events(room.dispatch(Event.START_QUIZ.value, p2, "c2")) == [Event.NEW_QUESTION.value]

    def test_host_who_has_not_joined_yet_keeps_the_room(self, room, p1, p2):
        room.dispatch(Event.JOIN_ROOM.value, p2, "c2")

        assert room.host_id == "p1"
        with pytest.raises(RoomProtocolError) as exc:
            room.dispatch(Event.START_QUIZ.value, p2, "c2")
        assert exc.value.code == "not_host"

    def test_commands_from_non_members_are_rejected(self, room, p1, p2):
        room.dispatch(Event.JOIN_ROOM.value, p1, "c1")

        with pytest.raises(RoomProtocolError) as exc:
            room.dispatch(Event.CHAT_MESSAGE.value, p2, "c2", ChatCommand(message="hi"))
        assert exc.value.code == "not_in_room"


class TestProgression:

    def test_only_host_controls_the_quiz(self, room, p1, p2):
        room.dispatch(Event.JOIN_ROOM.value, p1, "c1")
        room.dispatch(Event.JOIN_ROOM.value, p2, "c2")

        with pytest.raises(RoomProtocolError) as exc:
            room.dispatch(Event.START_QUIZ.value, p2, "c2")
        assert exc.value.code == "not_host"
        assert room.state == RoomState.WAITING

    def test_start_presents_first_question(self, room, p1):
        room.dispatch(Event.JOIN_ROOM.value, p1, "c1")
        deliveries = room.dispatch(Event.START_QUIZ.value, p1, "c1")

        assert room.state == RoomState.PLAYING
        assert events(deliveries) == [Event.NEW_QUESTION.value]
        payload = deliveries[0].payload
        assert payload["question"] == {"question": "Question 1?", "options": ["A", "B", "C", "D"]}
        assert payload["questionNumber"] == 1
        assert payload["totalQuestions"] == 2
        assert payload["timeLimit"] == 20
        assert deliveries[0].to is None and deliveries[0].exclude is None

    def test_question_payload_hides_the_answer_key(self, playing_room):
        snapshot = playing_room.snapshot()
        assert "correctAnswer" not in snapshot["currentQuestion"]["question"]

    def test_start_twice_is_rejected(self, playing_room, p1):
        with pytest.raises(RoomProtocolError) as exc:
            playing_room.dispatch(Event.START_QUIZ.value, p1, "c1")
        assert exc.value.code == "invalid_state"

    def test_index_only_moves_forward(self, playing_room, p1):
        seen = [playing_room.current_question_index]
        playing_room.dispatch(Event.RESOLVE_QUESTION.value, p1, "c1")
        seen.append(playing_room.current_question_index)
        playing_room.dispatch(Event.NEXT_QUESTION.value, p1, "c1")
        seen.append(playing_room.current_question_index)

        assert seen == sorted(seen)
        assert seen[-1] == 1

    def test_next_question_resolves_an_open_question_first(self, playing_room, p1, p2):
        suggest(playing_room, p2, "c2", 1)

        deliveries = playing_room.dispatch(Event.NEXT_QUESTION.value, p1, "c1")

        assert events(deliveries) == [Event.QUESTION_RESULT.value, Event.NEW_QUESTION.value]
        assert deliveries[0].payload["winningAnswer"] == 1
        assert deliveries[1].payload["questionNumber"] == 2

    def test_resolving_twice_is_rejected(self, playing_room, p1):
        playing_room.dispatch(Event.RESOLVE_QUESTION.value, p1, "c1")
        with pytest.raises(RoomProtocolError) as exc:
            playing_room.dispatch(Event.RESOLVE_QUESTION.value, p1, "c1")
        assert exc.value.code == "question_closed"

    def test_final_resolution_finishes_the_quiz(self, playing_room, p1, p2):
        suggest(playing_room, p2, "c2", 1)
        playing_room.dispatch(Event.NEXT_QUESTION.value, p1, "c1")
        suggest(playing_room, p2, "c2", 0)

        deliveries = playing_room.dispatch(Event.RESOLVE_QUESTION.value, p1, "c1")

        assert events(deliveries) == [Event.QUESTION_RESULT.value, Event.QUIZ_FINISHED.value]
        assert deliveries[0].payload["isCorrect"] is False
        assert deliveries[1].payload == {"groupScore": 1, "totalQuestions": 2, "correctAnswers": 1}
        assert playing_room.state == RoomState.FINISHED
        assert playing_room.finished_at is not None

    def test_finished_room_rejects_commands_explicitly(self, playing_room, p1, p2, host):
        playing_room.dispatch(Event.NEXT_QUESTION.value, p1, "c1")
        playing_room.dispatch(Event.NEXT_QUESTION.value, p1, "c1")
        assert playing_room.state == RoomState.FINISHED

        for command, payload in [
            (Event.SUGGEST_ANSWER.value, AnswerCommand(answer=1)),
            (Event.VOTE_ANSWER.value, AnswerCommand(answer=1)),
            (Event.NEXT_QUESTION.value, None),
            (Event.CHAT_MESSAGE.value, ChatCommand(message="gg")),
        ]:
            with pytest.raises(RoomProtocolError) as exc:
                playing_room.dispatch(command, p1, "c1", payload)
            assert exc.value.code == "quiz_finished"

        with pytest.raises(RoomProtocolError):
            playing_room.dispatch(Event.JOIN_ROOM.value, host, "c3")

    def test_empty_quiz_finishes_immediately(self, p1):
        room = RoomSession("R2", make_quiz(correct_answers=()), host_id=p1.user_id)
        room.dispatch(Event.JOIN_ROOM.value, p1, "c1")

        deliveries = room.dispatch(Event.START_QUIZ.value, p1, "c1")

        assert events(deliveries) == [Event.QUIZ_FINISHED.value]
        assert room.state == RoomState.FINISHED

    def test_score_uses_configured_points(self, quiz, p1, p2):
        room = RoomSession("R3", quiz, host_id=p1.user_id, points_per_correct_answer=100)
        room.dispatch(Event.JOIN_ROOM.value, p1, "c1")
        room.dispatch(Event.JOIN_ROOM.value, p2, "c2")
        room.dispatch(Event.START_QUIZ.value, p1, "c1")
        suggest(room, p2, "c2", 1)

        deliveries = room.dispatch(Event.RESOLVE_QUESTION.value, p1, "c1")

        assert deliveries[0].payload["groupScore"] == 100


class TestSuggestionsAndVotes:

    def test_suggestion_is_broadcast(self, playing_room, p1):
        deliveries = suggest(playing_room, p1, "c1", 1)

        assert events(deliveries) == [Event.NEW_SUGGESTION.value]
        assert deliveries[0].payload["suggestion"] == {
            "participant": "p1", "participantName": "Pat", "answer": 1, "votes": 0
        }

    def test_second_suggestion_from_same_participant_is_rejected(self, playing_room, p1):
        suggest(playing_room, p1, "c1", 1)

        with pytest.raises(RoomProtocolError) as exc:
            suggest(playing_room, p1, "c1", 2)
        assert exc.value.code == "duplicate_suggestion"

        with pytest.raises(RoomProtocolError):
            suggest(playing_room, p1, "c1", 1)

        assert len(playing_room.current_suggestions()) == 1

    def test_suggesting_an_existing_option_counts_as_a_vote(self, playing_room, p1, p2):
        suggest(playing_room, p1, "c1", 1)

        deliveries = suggest(playing_room, p2, "c2", 1)

        assert events(deliveries) == [Event.VOTE_UPDATE.value]
        assert deliveries[0].payload["votes"] == 1
        assert len(playing_room.current_suggestions()) == 1

    def test_out_of_range_option_is_rejected(self, playing_room, p1):
        with pytest.raises(RoomProtocolError) as exc:
            suggest(playing_room, p1, "c1", 7)
        assert exc.value.code == "invalid_option"

    def test_votes_are_idempotent(self, playing_room, p1, p2):
        suggest(playing_room, p1, "c1", 1)

        for _ in range(3):
            deliveries = vote(playing_room, p2, "c2", 1)

        assert deliveries[-1].payload["votes"] == 1
        suggestion = playing_room.current_suggestions()[0]
        assert list(suggestion.voters) == ["p2"]
        assert suggestion.vote_count == len(suggestion.voters)

    def test_self_vote_is_rejected(self, playing_room, p1):
        suggest(playing_room, p1, "c1", 1)

        with pytest.raises(RoomProtocolError) as exc:
            vote(playing_room, p1, "c1", 1)
        assert exc.value.code == "self_vote"

    def test_vote_for_unknown_suggestion_is_rejected(self, playing_room, p2):
        with pytest.raises(RoomProtocolError) as exc:
            vote(playing_room, p2, "c2", 3)
        assert exc.value.code == "unknown_suggestion"

    def test_changing_vote_moves_it(self, playing_room, p1, p2, host):
        playing_room.dispatch(Event.JOIN_ROOM.value, host, "c3")
        suggest(playing_room, p1, "c1", 1)
        suggest(playing_room, p2, "c2", 2)
        vote(playing_room, host, "c3", 1)

        deliveries = vote(playing_room, host, "c3", 2)

        assert [(d.payload["answer"], d.payload["votes"]) for d in deliveries] == [(1, 0), (2, 1)]
        assert {d.payload["playerId"] for d in deliveries} == {host.user_id}

    def test_vote_after_resolution_is_rejected(self, playing_room, p1, p2):
        suggest(playing_room, p1, "c1", 1)
        playing_room.dispatch(Event.RESOLVE_QUESTION.value, p1, "c1")

        with pytest.raises(RoomProtocolError) as exc:
            vote(playing_room, p2, "c2", 1)
        assert exc.value.code == "question_closed"

    def test_tie_goes_to_earliest_suggestion(self, playing_room, p1, p2):
        suggest(playing_room, p1, "c1", 3)
        suggest(playing_room, p2, "c2", 1)

        deliveries = playing_room.dispatch(Event.RESOLVE_QUESTION.value, p1, "c1")

        assert deliveries[0].payload["winningAnswer"] == 3

    def test_most_votes_wins(self, playing_room, p1, p2, host):
        playing_room.dispatch(Event.JOIN_ROOM.value, host, "c3")
        suggest(playing_room, p1, "c1", 3)
        suggest(playing_room, p2, "c2", 1)
        vote(playing_room, host, "c3", 1)

        deliveries = playing_room.dispatch(Event.RESOLVE_QUESTION.value, p1, "c1")

        assert deliveries[0].payload["winningAnswer"] == 1
        assert deliveries[0].payload["winningVotes"] == 1
        assert deliveries[0].payload["isCorrect"] is True

    def test_no_suggestions_resolves_without_winner(self, playing_room, p1):
        deliveries = playing_room.dispatch(Event.RESOLVE_QUESTION.value, p1, "c1")

        assert deliveries[0].payload["winningAnswer"] is None
        assert deliveries[0].payload["isCorrect"] is False
        assert playing_room.group_score == 0

    def test_departed_participant_votes_still_count(self, playing_room, p1, p2, host):
        playing_room.dispatch(Event.JOIN_ROOM.value, host, "c3")
        suggest(playing_room, p1, "c1", 3)
        suggest(playing_room, p2, "c2", 1)
        vote(playing_room, host, "c3", 1)
        playing_room.dispatch(Event.LEAVE_ROOM.value, host, "c3")

        deliveries = playing_room.dispatch(Event.RESOLVE_QUESTION.value, p1, "c1")

        assert deliveries[0].payload["winningAnswer"] == 1

    def test_new_question_resets_suggestions(self, playing_room, p1, p2):
        suggest(playing_room, p1, "c1", 1)
        playing_room.dispatch(Event.NEXT_QUESTION.value, p1, "c1")

        assert playing_room.current_suggestions() == []
        # The same participant may suggest again on the new question
        assert events(suggest(playing_room, p1, "c1", 2)) == [Event.NEW_SUGGESTION.value]


class TestRelays:

    def test_chat_goes_to_everyone_including_sender(self, room, p1):
        room.dispatch(Event.JOIN_ROOM.value, p1, "c1")

        deliveries = room.dispatch(Event.CHAT_MESSAGE.value, p1, "c1", ChatCommand(message="hello"))

        assert deliveries[0].to is None and deliveries[0].exclude is None
        assert deliveries[0].payload["playerName"] == "Pat"
        assert deliveries[0].payload["message"] == "hello"
        assert "timestamp" in deliveries[0].payload

    def test_overlong_chat_is_rejected(self, quiz, p1):
        room = RoomSession("R4", quiz, host_id=p1.user_id, max_chat_message_length=5)
        room.dispatch(Event.JOIN_ROOM.value, p1, "c1")

        with pytest.raises(RoomProtocolError) as exc:
            room.dispatch(Event.CHAT_MESSAGE.value, p1, "c1", ChatCommand(message="too long"))
        assert exc.value.code == "message_too_long"

    def test_draw_goes_to_everyone_but_the_author(self, room, p1):
        room.dispatch(Event.JOIN_ROOM.value, p1, "c1")
        stroke = WhiteboardDrawCommand(x0=0, y0=0, x1=10, y1=10, color="#ff0000", brushSize=3, isErasing=True)

        deliveries = room.dispatch(Event.WHITEBOARD_DRAW.value, p1, "c1", stroke)

        assert deliveries[0].exclude == "c1"
        assert deliveries[0].payload == {
            "x0": 0.0, "y0": 0.0, "x1": 10.0, "y1": 10.0,
            "color": "#ff0000", "brushSize": 3.0, "isErasing": True
        }

    def test_clear_goes_to_everyone(self, room, p1):
        room.dispatch(Event.JOIN_ROOM.value, p1, "c1")

        deliveries = room.dispatch(Event.WHITEBOARD_CLEAR.value, p1, "c1")

        assert deliveries[0].exclude is None
        assert deliveries[0].payload == {"clearedBy": "p1"}
