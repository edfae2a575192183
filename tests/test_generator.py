import base64
from datetime import datetime

import httpx
import pytest

from conftest import make_request
from pages_deployer.errors import DeployerError
from pages_deployer.generator import (
    CodeGenerator,
    InvalidHTMLError,
    attachment_to_gemini_part,
    create_prompt,
    generate_license,
    parse_html,
)
from pages_deployer.llm import GeminiClient
from pages_deployer.models import Attachment

PAGE = "<!DOCTYPE html>\n<html><head><title>Hi</title></head><body>Hello</body></html>"


class FakeLLM:
    def __init__(self, reply=PAGE, error=None):
        self.reply = reply
        self.error = error
        self.prompts = []
        self.parts = []

    async def generate_text(self, prompt, parts=()):
        self.prompts.append(prompt)
        self.parts.append(list(parts))
        if self.error:
            raise self.error
        return self.reply


def data_uri(mime, raw: bytes) -> str:
    return f"data:{mime};base64,{base64.b64encode(raw).decode()}"


@pytest.mark.parametrize(
    "reply",
    [
        PAGE,
        f"Here you go:\n```html\n{PAGE}\n```\nEnjoy!",
        f"```\n{PAGE}\n```",
    ],
)
def test_parse_html_strips_fences(reply):
    assert parse_html(reply) == PAGE


def test_parse_html_closes_unterminated_document():
    assert parse_html("<!DOCTYPE html><html><body>x</body>").endswith("</body>\n</html>")


def test_parse_html_rejects_non_html():
    with pytest.raises(InvalidHTMLError):
        parse_html("Sorry, I cannot help with that.")


def test_create_prompt_lists_checks_attachments_and_csv_preview():
    csv = b"name,amount\nalice,10\nbob,20\ncarol,30\n"
    request = make_request(
        checks=["Title is set", "Total is shown"],
        attachments=[Attachment(name="data.csv", url=data_uri("text/csv", csv))],
    )
    prompt = create_prompt(request)
    assert "1. Title is set\n2. Total is shown" in prompt
    assert "- data.csv" in prompt
    assert "alice,10" in prompt and "bob,20" in prompt
    assert "carol,30" not in prompt


def test_create_prompt_includes_existing_page():
    prompt = create_prompt(make_request(round=2), existing_html="<html>old</html>")
    assert "<html>old</html>" in prompt


def test_generate_license_mentions_year_and_holder():
    text = generate_license("octo")
    assert text.startswith("MIT License")
    assert f"Copyright (c) {datetime.now().year} octo" in text


async def test_attachment_to_gemini_part_data_uri():
    async with httpx.AsyncClient() as http:
        image = await attachment_to_gemini_part(http, data_uri("image/png", b"\x89PNG"))
        text = await attachment_to_gemini_part(http, data_uri("text/plain", b"hello"))
    assert image == {"inlineData": {"data": base64.b64encode(b"\x89PNG").decode(), "mimeType": "image/png"}}
    assert text is None


async def test_attachment_to_gemini_part_fetches_remote_images():
    def handler(request):
        if request.url.path.endswith(".png"):
            return httpx.Response(200, content=b"img", headers={"Content-Type": "image/png"})
        return httpx.Response(200, text="a,b", headers={"Content-Type": "text/csv"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        image = await attachment_to_gemini_part(http, "https://files.test/logo.png")
        csv = await attachment_to_gemini_part(http, "https://files.test/data.csv")
    assert image["inlineData"]["mimeType"] == "image/png"
    assert csv is None


async def test_generate_returns_fixed_file_set():
    llm = FakeLLM(reply=f"```html\n{PAGE}\n```")
    async with httpx.AsyncClient() as http:
        generator = CodeGenerator(llm, http=http, license_holder="octo")
        files = await generator.generate(make_request())
    assert set(files) == {"index.html", "LICENSE", "README.md"}
    assert files["index.html"] == PAGE
    assert files["README.md"].startswith("# Hello World!")


async def test_generate_sends_image_attachments_as_parts():
    llm = FakeLLM()
    request = make_request(attachments=[Attachment(name="shot.png", url=data_uri("image/png", b"img"))])
    async with httpx.AsyncClient() as http:
        await CodeGenerator(llm, http=http).generate(request)
    assert llm.parts[0][0]["inlineData"]["mimeType"] == "image/png"


async def test_generate_falls_back_when_llm_fails():
    llm = FakeLLM(error=DeployerError("GEMINI_API_KEY not configured."))
    request = make_request(round=2, task="", checks=["<b>bold</b> check"])
    async with httpx.AsyncClient() as http:
        files = await CodeGenerator(llm, http=http).generate(request, task_name="Hello World!")
    assert "Fallback Mode" in files["index.html"]
    assert "&lt;b&gt;bold&lt;/b&gt; check" in files["index.html"]
    assert files["README.md"].startswith("# Hello World!")


async def test_gemini_client_requires_key(settings, sleeps):
    client = GeminiClient(settings, http=httpx.AsyncClient(), sleep=sleeps)
    with pytest.raises(DeployerError):
        await client.generate_text("prompt")
    await client.aclose()


async def test_gemini_client_extracts_text_and_retries(settings, sleeps):
    settings.GEMINI_API_KEY = "key"
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(503, json={"error": "overloaded"})
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "<html>"}, {"text": "</html>"}]}}]})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        client = GeminiClient(settings, http=http, sleep=sleeps)
        text = await client.generate_text("make a page")
    assert text == "<html></html>"
    assert calls[-1].url.params["key"] == "key"
    assert calls[-1].url.path.endswith(f"/models/{settings.GEMINI_MODEL}:generateContent")
    assert sleeps.calls == [1]
