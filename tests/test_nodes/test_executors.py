"""Tests for the built-in node executors."""

import json

import httpx
import pytest
import respx

from chainly.core.realtime import NodeStatus
from chainly.models.node import NodeType
from chainly.nodes.actions.conditional import ConditionalExecutor
from chainly.nodes.actions.http_request import HttpRequestExecutor
from chainly.nodes.actions.set import SetExecutor
from chainly.nodes.actions.switch import SwitchExecutor
from chainly.nodes.actions.wait import WaitExecutor
from chainly.nodes.apis.anthropic import ANTHROPIC_MESSAGES_URL, AnthropicExecutor
from chainly.nodes.apis.discord import DiscordExecutor
from chainly.nodes.apis.gemini import GEMINI_GENERATE_URL, GeminiExecutor
from chainly.nodes.apis.google_calendar import CALENDAR_EVENTS_URL, GoogleCalendarExecutor
from chainly.nodes.apis.openai import OPENAI_CHAT_URL, OpenAIExecutor
from chainly.nodes.base import NodeExecutionError, NodeValidationError
from chainly.nodes.triggers import TriggerExecutor


class TestExecutorLifecycle:
    @pytest.mark.asyncio
    async def test_step_keys_and_statuses_on_success(self, make_params, step_runner, publisher):
        params = make_params(NodeType.SET, {"fields": [{"key": "a", "value": "1"}]}, node_id="s1")

        await SetExecutor().run(params)

        assert step_runner.keys == [
            "publish-loading-s1",
            "evaluate-fields-s1",
            "publish-success-s1",
        ]
        assert [e.status for e in publisher.events] == [NodeStatus.LOADING, NodeStatus.SUCCESS]
        assert {e.channel for e in publisher.events} == {"set-execution"}

    @pytest.mark.asyncio
    async def test_validation_error(self, make_params, step_runner, publisher):
        params = make_params(NodeType.SET, {}, node_id="s1")

        with pytest.raises(NodeExecutionError) as exc_info:
            await SetExecutor().run(params)

        assert exc_info.value.error_code == "VALIDATION_ERROR"
        assert exc_info.value.details == {"field": "fields"}
        assert step_runner.keys == ["publish-loading-s1", "publish-error-s1"]
        assert publisher.events[-1].status == NodeStatus.ERROR


class TestTriggerExecutor:
    @pytest.mark.asyncio
    async def test_passes_context_through(self, make_params):
        context = {"webhook": {"body": {"id": 1}}}

        result = await TriggerExecutor(NodeType.WEBHOOK_TRIGGER).run(
            make_params(NodeType.WEBHOOK_TRIGGER, {}, context=context)
        )

        assert result == context

    def test_rejects_action_type(self):
        with pytest.raises(ValueError):
            TriggerExecutor(NodeType.SET)


class TestSetExecutor:
    @pytest.mark.asyncio
    async def test_fields_are_evaluated(self, make_params):
        params = make_params(
            NodeType.SET,
            {
                "variableName": "order",
                "fields": [
                    {"key": "id", "value": "{{webhook.body.id}}"},
                    {"key": "label", "value": "Order #{{webhook.body.id}}"},
                    {"key": "count", "value": "3"},
                ],
            },
            context={"webhook": {"body": {"id": 7}}},
        )

        result = await SetExecutor().run(params)

        assert result["order"] == {"id": 7, "label": "Order #7", "count": 3}
        assert result["webhook"] == {"body": {"id": 7}}

    @pytest.mark.asyncio
    async def test_default_variable_name(self, make_params):
        result = await SetExecutor().run(
            make_params(NodeType.SET, {"fields": [{"key": "x", "value": "y"}]})
        )

        assert result == {"data": {"x": "y"}}

    def test_empty_key_is_rejected(self):
        with pytest.raises(NodeValidationError, match="Field key cannot be empty"):
            SetExecutor().validate_input({"fields": [{"key": "", "value": "x"}]})


class TestHttpRequestExecutor:
    @pytest.mark.asyncio
    @respx.mock
    async def test_json_response(self, make_params):
        route = respx.post("https://api.example.com/orders/7").mock(
            return_value=httpx.Response(201, json={"ok": True})
        )
        params = make_params(
            NodeType.HTTP_REQUEST,
            {
                "endpoint": "https://api.example.com/orders/{{order.id}}",
                "method": "post",
                "body": '{"id": {{order.id}}}',
                "variableName": "created",
            },
            context={"order": {"id": 7}},
        )

        result = await HttpRequestExecutor().run(params)

        assert result["created"] == {"status": 201, "statusText": "Created", "data": {"ok": True}}
        request = route.calls.last.request
        assert json.loads(request.content) == {"id": 7}
        assert request.headers["content-type"] == "application/json"

    @pytest.mark.asyncio
    @respx.mock
    async def test_text_response(self, make_params):
        respx.get("https://example.com/ping").mock(return_value=httpx.Response(200, text="pong"))

        result = await HttpRequestExecutor().run(
            make_params(NodeType.HTTP_REQUEST, {"endpoint": "https://example.com/ping"})
        )

        assert result["httpResponse"]["data"] == "pong"

    @pytest.mark.asyncio
    @respx.mock
    async def test_client_error_is_not_retriable(self, make_params):
        respx.get("https://example.com/missing").mock(return_value=httpx.Response(404))

        with pytest.raises(NodeExecutionError) as exc_info:
            await HttpRequestExecutor().run(
                make_params(NodeType.HTTP_REQUEST, {"endpoint": "https://example.com/missing"})
            )

        assert exc_info.value.error_code == "NON_RETRIABLE"
        assert "404" in str(exc_info.value)

    @pytest.mark.asyncio
    @respx.mock
    async def test_server_error_is_retriable(self, make_params):
        respx.get("https://example.com/flaky").mock(return_value=httpx.Response(503))

        with pytest.raises(NodeExecutionError) as exc_info:
            await HttpRequestExecutor().run(
                make_params(NodeType.HTTP_REQUEST, {"endpoint": "https://example.com/flaky"})
            )

        assert exc_info.value.error_code == "EXECUTION_ERROR"
        assert isinstance(exc_info.value.__cause__, httpx.HTTPStatusError)

    @pytest.mark.parametrize(
        "data,message",
        [
            ({}, "Endpoint is required"),
            ({"endpoint": "https://x", "method": "TRACE"}, "Unsupported method"),
            ({"endpoint": "https://x", "body": {"a": 1}}, "Body must be a string"),
        ],
    )
    def test_validation(self, data, message):
        with pytest.raises(NodeValidationError, match=message):
            HttpRequestExecutor().validate_input(data)


class TestWaitExecutor:
    @pytest.mark.asyncio
    async def test_sleeps_durably(self, make_params, step_runner):
        result = await WaitExecutor().run(
            make_params(NodeType.WAIT, {"duration": 2, "unit": "minutes"}, node_id="w1")
        )

        assert step_runner.sleeps == [("wait-w1", 120)]
        assert result["_lastWait"]["formatted"] == "2 minutes"
        assert "wait-complete-w1" in step_runner.keys

    @pytest.mark.asyncio
    async def test_singular_unit(self, make_params):
        result = await WaitExecutor().run(make_params(NodeType.WAIT, {"duration": 1, "unit": "hours"}))

        assert result["_lastWait"]["formatted"] == "1 hour"

    @pytest.mark.parametrize(
        "data",
        [{"duration": 0}, {"duration": -1}, {"duration": "5"}, {"duration": True}, {"unit": "weeks"}],
    )
    def test_invalid_input(self, data):
        with pytest.raises(NodeValidationError):
            WaitExecutor().validate_input(data)


class TestOpenAIExecutor:
    DATA = {
        "variableName": "reply",
        "credentialId": "cred-1",
        "userPrompt": "Summarize order {{order.id}}",
    }

    @pytest.mark.asyncio
    @respx.mock
    async def test_generates_text(self, make_params, credentials):
        route = respx.post(OPENAI_CHAT_URL).mock(
            return_value=httpx.Response(
                200,
                json={
                    "model": "gpt-4o",
                    "choices": [{"message": {"content": "All good"}}],
                    "usage": {"total_tokens": 12},
                },
            )
        )

        result = await OpenAIExecutor().run(
            make_params(NodeType.OPENAI, self.DATA, context={"order": {"id": 9}})
        )

        assert result["reply"] == {"text": "All good", "model": "gpt-4o", "usage": {"total_tokens": 12}}
        request = route.calls.last.request
        assert request.headers["authorization"] == "Bearer sk-test"
        body = json.loads(request.content)
        assert body["messages"][1] == {"role": "user", "content": "Summarize order 9"}
        assert credentials.requested == [("cred-1", "user-1")]

    @pytest.mark.asyncio
    @respx.mock
    async def test_invalid_key(self, make_params):
        respx.post(OPENAI_CHAT_URL).mock(return_value=httpx.Response(401))

        with pytest.raises(NodeExecutionError, match="Invalid OpenAI API key") as exc_info:
            await OpenAIExecutor().run(make_params(NodeType.OPENAI, self.DATA))

        assert exc_info.value.error_code == "NON_RETRIABLE"

    @pytest.mark.asyncio
    async def test_requires_credentials_in_run(self, make_params):
        with pytest.raises(NodeExecutionError, match="Credentials are not available"):
            await OpenAIExecutor().run(make_params(NodeType.OPENAI, self.DATA, with_credentials=False))

    @pytest.mark.parametrize(
        "override,message",
        [
            ({"variableName": ""}, "Variable name is required"),
            ({"variableName": "1bad"}, "Variable name must start"),
            ({"userPrompt": ""}, "User prompt is required"),
            ({"credentialId": None}, "Credential is required"),
            ({"temperature": 3}, "Temperature"),
            ({"maxTokens": 0}, "Max tokens"),
        ],
    )
    def test_validation(self, override, message):
        with pytest.raises(NodeValidationError, match=message):
            OpenAIExecutor().validate_input({**self.DATA, **override})


class TestGoogleCalendarExecutor:
    DATA = {"variableName": "agenda", "credentialId": "cred-g", "date": "{{day}}"}
    URL = CALENDAR_EVENTS_URL.format(calendar_id="primary")

    @pytest.mark.asyncio
    @respx.mock
    async def test_lists_events_for_day(self, make_params):
        route = respx.get(self.URL).mock(
            return_value=httpx.Response(200, json={"items": [{"summary": "Standup"}]})
        )

        result = await GoogleCalendarExecutor().run(
            make_params(NodeType.GOOGLE_CALENDAR, self.DATA, context={"day": "2024-03-05"})
        )

        assert result["agenda"] == {
            "events": [{"summary": "Standup"}],
            "date": "2024-03-05",
            "count": 1,
        }
        request = route.calls.last.request
        assert request.headers["authorization"] == "Bearer ya29.token"
        assert request.url.params["timeMin"] == "2024-03-05T00:00:00+00:00"
        assert request.url.params["singleEvents"] == "true"

    @pytest.mark.asyncio
    async def test_invalid_date(self, make_params):
        with pytest.raises(NodeExecutionError, match="Invalid date format") as exc_info:
            await GoogleCalendarExecutor().run(
                make_params(NodeType.GOOGLE_CALENDAR, self.DATA, context={"day": "next tuesday"})
            )

        assert exc_info.value.error_code == "NON_RETRIABLE"

    @pytest.mark.asyncio
    @respx.mock
    async def test_forbidden_mentions_scope(self, make_params):
        respx.get(self.URL).mock(return_value=httpx.Response(403))

        with pytest.raises(NodeExecutionError, match="calendar.readonly"):
            await GoogleCalendarExecutor().run(
                make_params(NodeType.GOOGLE_CALENDAR, self.DATA, context={"day": "2024-03-05"})
            )


class TestConditionalExecutor:
    @pytest.mark.asyncio
    async def test_stores_result(self, make_params, step_runner):
        data = {"variableName": "bigOrder", "condition": "{{order.total}} > 100"}

        result = await ConditionalExecutor().run(
            make_params(NodeType.CONDITIONAL, data, context={"order": {"total": 150}}, node_id="c1")
        )

        assert result["bigOrder"] == {"result": True, "condition": "{{order.total}} > 100"}
        assert result["order"] == {"total": 150}
        assert "evaluate-condition-c1" in step_runner.keys

    @pytest.mark.asyncio
    async def test_false_condition(self, make_params):
        data = {"variableName": "bigOrder", "condition": "order.total > 100"}

        result = await ConditionalExecutor().run(
            make_params(NodeType.CONDITIONAL, data, context={"order": {"total": 20}})
        )

        assert result["bigOrder"]["result"] is False

    @pytest.mark.asyncio
    async def test_invalid_condition_is_not_retriable(self, make_params):
        data = {"variableName": "check", "condition": "order.total >"}

        with pytest.raises(NodeExecutionError, match="Failed to evaluate condition") as exc_info:
            await ConditionalExecutor().run(make_params(NodeType.CONDITIONAL, data))

        assert exc_info.value.error_code == "NON_RETRIABLE"

    @pytest.mark.parametrize(
        "data,message",
        [
            ({"condition": "true"}, "Variable name is required"),
            ({"variableName": "check"}, "Condition is required"),
        ],
    )
    def test_validation(self, data, message):
        with pytest.raises(NodeValidationError, match=message):
            ConditionalExecutor().validate_input(data)


class TestSwitchExecutor:
    DATA = {
        "variableName": "route",
        "expression": "{{order.status}}",
        "cases": [
            {"label": "Paid", "value": "paid"},
            {"label": "Refunded", "value": "refunded"},
        ],
    }

    @pytest.mark.asyncio
    async def test_matching_case(self, make_params, step_runner):
        result = await SwitchExecutor().run(
            make_params(NodeType.SWITCH, self.DATA, context={"order": {"status": "refunded"}}, node_id="sw")
        )

        assert result["route"] == {
            "value": "refunded",
            "matchedCase": "Refunded",
            "matchedIndex": 1,
            "isDefault": False,
            "selectedOutput": "case-1",
        }
        assert "evaluate-switch-sw" in step_runner.keys

    @pytest.mark.asyncio
    async def test_numbers_match_as_text(self, make_params):
        data = {**self.DATA, "expression": "order.count", "cases": [{"label": "One", "value": 1}]}

        result = await SwitchExecutor().run(
            make_params(NodeType.SWITCH, data, context={"order": {"count": 1.0}})
        )

        assert result["route"]["matchedIndex"] == 0

    @pytest.mark.asyncio
    async def test_default_output(self, make_params):
        result = await SwitchExecutor().run(
            make_params(NodeType.SWITCH, self.DATA, context={"order": {"status": "pending"}})
        )

        assert result["route"]["isDefault"] is True
        assert result["route"]["matchedCase"] is None
        assert result["route"]["selectedOutput"] == "default"

    @pytest.mark.asyncio
    async def test_no_default_output(self, make_params):
        data = {**self.DATA, "hasDefault": False}

        result = await SwitchExecutor().run(
            make_params(NodeType.SWITCH, data, context={"order": {"status": "pending"}})
        )

        assert result["route"]["selectedOutput"] is None

    @pytest.mark.parametrize(
        "override,message",
        [
            ({"variableName": None}, "Variable name is required"),
            ({"expression": ""}, "Expression is required"),
            ({"cases": []}, "At least one case is required"),
            ({"cases": ["paid"]}, "Each case needs a label and value"),
        ],
    )
    def test_validation(self, override, message):
        with pytest.raises(NodeValidationError, match=message):
            SwitchExecutor().validate_input({**self.DATA, **override})


class TestAnthropicExecutor:
    DATA = {
        "variableName": "reply",
        "credentialId": "cred-a",
        "model": "claude-sonnet-4-5",
        "userPrompt": "Summarize order {{order.id}}",
    }

    @pytest.mark.asyncio
    @respx.mock
    async def test_generates_text(self, make_params, credentials):
        route = respx.post(ANTHROPIC_MESSAGES_URL).mock(
            return_value=httpx.Response(
                200,
                json={
                    "model": "claude-sonnet-4-5",
                    "content": [{"type": "text", "text": "All good"}],
                    "usage": {"input_tokens": 10, "output_tokens": 2},
                },
            )
        )

        result = await AnthropicExecutor().run(
            make_params(NodeType.ANTHROPIC, self.DATA, context={"order": {"id": 9}})
        )

        assert result["reply"]["text"] == "All good"
        request = route.calls.last.request
        assert request.headers["x-api-key"] == "sk-test"
        assert request.headers["anthropic-version"] == "2023-06-01"
        body = json.loads(request.content)
        assert body["system"] == "You are a helpful assistant."
        assert body["messages"] == [{"role": "user", "content": "Summarize order 9"}]
        assert credentials.requested == [("cred-a", "user-1")]

    @pytest.mark.asyncio
    @respx.mock
    async def test_invalid_key(self, make_params):
        respx.post(ANTHROPIC_MESSAGES_URL).mock(return_value=httpx.Response(401))

        with pytest.raises(NodeExecutionError, match="Invalid Anthropic API key") as exc_info:
            await AnthropicExecutor().run(make_params(NodeType.ANTHROPIC, self.DATA))

        assert exc_info.value.error_code == "NON_RETRIABLE"

    @pytest.mark.asyncio
    @respx.mock
    async def test_overloaded_is_retriable(self, make_params):
        respx.post(ANTHROPIC_MESSAGES_URL).mock(return_value=httpx.Response(529))

        with pytest.raises(NodeExecutionError) as exc_info:
            await AnthropicExecutor().run(make_params(NodeType.ANTHROPIC, self.DATA))

        assert exc_info.value.error_code == "EXECUTION_ERROR"

    @pytest.mark.parametrize(
        "override,message",
        [
            ({"model": ""}, "Model is required"),
            ({"userPrompt": None}, "User prompt is required"),
            ({"credentialId": None}, "Credential is required"),
            ({"maxTokens": 0}, "Max tokens"),
        ],
    )
    def test_validation(self, override, message):
        with pytest.raises(NodeValidationError, match=message):
            AnthropicExecutor().validate_input({**self.DATA, **override})


class TestGeminiExecutor:
    DATA = {
        "variableName": "reply",
        "credentialId": "cred-g",
        "model": "gemini-2.0-flash",
        "systemPrompt": "Answer as {{persona}}",
        "userPrompt": "Hello",
    }
    URL = GEMINI_GENERATE_URL.format(model="gemini-2.0-flash")

    @pytest.mark.asyncio
    @respx.mock
    async def test_generates_text(self, make_params):
        route = respx.post(self.URL).mock(
            return_value=httpx.Response(
                200,
                json={
                    "candidates": [{"content": {"parts": [{"text": "Hi there"}]}}],
                    "usageMetadata": {"totalTokenCount": 5},
                },
            )
        )

        result = await GeminiExecutor().run(
            make_params(NodeType.GEMINI, self.DATA, context={"persona": "a pirate"})
        )

        assert result["reply"] == {
            "text": "Hi there",
            "model": "gemini-2.0-flash",
            "usage": {"totalTokenCount": 5},
        }
        request = route.calls.last.request
        assert request.headers["x-goog-api-key"] == "sk-test"
        body = json.loads(request.content)
        assert body["systemInstruction"] == {"parts": [{"text": "Answer as a pirate"}]}
        assert body["contents"] == [{"role": "user", "parts": [{"text": "Hello"}]}]

    @pytest.mark.asyncio
    @respx.mock
    async def test_no_candidates(self, make_params):
        respx.post(self.URL).mock(return_value=httpx.Response(200, json={"candidates": []}))

        result = await GeminiExecutor().run(make_params(NodeType.GEMINI, self.DATA))

        assert result["reply"]["text"] == ""

    @pytest.mark.asyncio
    @respx.mock
    async def test_unknown_model(self, make_params):
        respx.post(self.URL).mock(return_value=httpx.Response(404))

        with pytest.raises(NodeExecutionError, match="not found") as exc_info:
            await GeminiExecutor().run(make_params(NodeType.GEMINI, self.DATA))

        assert exc_info.value.error_code == "NON_RETRIABLE"


class TestDiscordExecutor:
    WEBHOOK_URL = "https://discord.com/api/webhooks/123/token"
    DATA = {
        "variableName": "notice",
        "webhookUrl": WEBHOOK_URL,
        "content": "New order {{order.id}} from {{order.customer}}",
        "username": "Orders Bot",
    }

    @pytest.mark.asyncio
    @respx.mock
    async def test_posts_message(self, make_params, step_runner):
        route = respx.post(self.WEBHOOK_URL).mock(return_value=httpx.Response(204))

        result = await DiscordExecutor().run(
            make_params(
                NodeType.DISCORD,
                self.DATA,
                context={"order": {"id": 9, "customer": "Ada & Co"}},
                node_id="d1",
            )
        )

        assert result["notice"] == {"message": "New order 9 from Ada & Co"}
        assert json.loads(route.calls.last.request.content) == {
            "content": "New order 9 from Ada & Co",
            "username": "Orders Bot",
        }
        assert "discord-webhook-d1" in step_runner.keys

    @pytest.mark.asyncio
    @respx.mock
    async def test_long_message_is_truncated(self, make_params):
        route = respx.post(self.WEBHOOK_URL).mock(return_value=httpx.Response(204))
        data = {**self.DATA, "content": "x" * 2500, "username": None}

        result = await DiscordExecutor().run(make_params(NodeType.DISCORD, data))

        assert len(result["notice"]["message"]) == 2000
        assert json.loads(route.calls.last.request.content) == {"content": "x" * 2000}

    @pytest.mark.asyncio
    @respx.mock
    async def test_deleted_webhook_is_not_retriable(self, make_params):
        respx.post(self.WEBHOOK_URL).mock(return_value=httpx.Response(404))

        with pytest.raises(NodeExecutionError, match="Webhook not found") as exc_info:
            await DiscordExecutor().run(make_params(NodeType.DISCORD, self.DATA))

        assert exc_info.value.error_code == "NON_RETRIABLE"

    @pytest.mark.asyncio
    async def test_rendered_url_must_be_http(self, make_params):
        data = {**self.DATA, "webhookUrl": "{{missing}}"}

        with pytest.raises(NodeExecutionError, match="must start with http"):
            await DiscordExecutor().run(make_params(NodeType.DISCORD, data))

    @pytest.mark.parametrize(
        "override,message",
        [
            ({"webhookUrl": ""}, "Webhook URL is required"),
            ({"content": ""}, "Message content is required"),
        ],
    )
    def test_validation(self, override, message):
        with pytest.raises(NodeValidationError, match=message):
            DiscordExecutor().validate_input({**self.DATA, **override})
