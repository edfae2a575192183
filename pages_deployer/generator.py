import base64
import binascii
import html
import re
from datetime import datetime
from typing import Dict, List, Optional

import httpx

from .logs import logger
from .models import Attachment, TaskRequest

DATA_URI_RE = re.compile(r"^data:(?P<mime_type>[^;,]+)(;[^,]*)?;base64,(?P<data>.*)$", re.IGNORECASE | re.DOTALL)
FENCED_HTML_RE = re.compile(r"```html\s*([\s\S]*?)\s*```", re.IGNORECASE)
FENCED_RE = re.compile(r"```[a-zA-Z]*\s*([\s\S]*?)\s*```")

MIT_LICENSE = """MIT License

Copyright (c) {notice}

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE.
"""


class InvalidHTMLError(ValueError):
    pass


# ------------------------- Attachment helpers -------------------------
def decode_data_uri(data_uri: str) -> Optional[tuple]:
    match = DATA_URI_RE.match(data_uri or "")
    if not match:
        return None
    try:
        return match.group("mime_type").lower(), base64.b64decode(match.group("data"))
    except (binascii.Error, ValueError):
        return None


def data_uri_to_gemini_part(data_uri: str) -> Optional[dict]:
    match = DATA_URI_RE.match(data_uri or "")
    if not match or not match.group("mime_type").lower().startswith("image/"):
        return None
    return {"inlineData": {"data": match.group("data"), "mimeType": match.group("mime_type")}}


async def attachment_to_gemini_part(http: httpx.AsyncClient, attachment_url: str) -> Optional[dict]:
    if not attachment_url:
        return None
    if attachment_url.startswith("data:"):
        return data_uri_to_gemini_part(attachment_url)
    if attachment_url.startswith(("http://", "https://")):
        try:
            resp = await http.get(attachment_url, timeout=15)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"[ATTACHMENT] Failed to fetch attachment {attachment_url}: {e}")
            return None
        mime = resp.headers.get("Content-Type", "").split(";")[0].strip()
        if not mime.startswith("image/"):
            logger.info(f"[ATTACHMENT] Skipping non-image MIME: {mime}")
            return None
        b64 = base64.b64encode(resp.content).decode("utf-8")
        return {"inlineData": {"data": b64, "mimeType": mime}}
    return None


def csv_preview(attachment: Attachment, lines: int = 3) -> Optional[str]:
    if not attachment.name.lower().endswith(".csv"):
        return None
    decoded = decode_data_uri(attachment.url)
    if not decoded:
        return None
    text = decoded[1].decode("utf-8", errors="replace")
    return "\n".join(text.splitlines()[:lines])


# ------------------------- Prompt and parsing -------------------------
def create_prompt(request: TaskRequest, existing_html: Optional[str] = None) -> str:
    checks = "\n".join(f"{i}. {c}" for i, c in enumerate(request.checks, 1))
    prompt = (
        "You are an expert web developer. Create a COMPLETE, VALID, SINGLE-PAGE HTML application.\n\n"
        "CRITICAL REQUIREMENTS:\n"
        "1. Generate a SINGLE, COMPLETE HTML file with ALL code embedded\n"
        "2. HTML must be VALID and WELL-FORMED with ALL tags properly closed\n"
        "3. Include <!DOCTYPE html>, <html>, <head>, and <body> tags\n"
        "4. ALL CSS must be in <style> tags in the <head>\n"
        "5. ALL JavaScript must be in <script> tags before </body>\n"
        "6. Do NOT use markdown code blocks - output ONLY the raw HTML\n"
        "7. Make it functional, modern, and responsive\n\n"
        f"TASK:\n{request.brief}\n\n"
        f"EVALUATION CRITERIA:\n{checks}\n"
    )
    if request.attachments:
        prompt += "\nATTACHMENTS PROVIDED:\n"
        for att in request.attachments:
            prompt += f"- {att.name}: Use this data in your application\n"
            preview = csv_preview(att)
            if preview:
                prompt += "  Preview:\n  " + preview.replace("\n", "\n  ") + "\n"
    if existing_html:
        prompt += (
            "\nCURRENT VERSION OF index.html (update it; keep everything that already works):\n"
            f"{existing_html}\n"
        )
    prompt += "\nGenerate the complete HTML now:"
    return prompt


def parse_html(response: str) -> str:
    text = response
    match = FENCED_HTML_RE.search(text) or FENCED_RE.search(text)
    if match:
        text = match.group(1)
    text = text.strip()
    if "<!DOCTYPE" not in text and "<html" not in text:
        raise InvalidHTMLError("Invalid HTML structure")
    if not text.endswith("</html>") and "</body>" in text:
        text += "\n</html>"
    return text


def generate_license(holder: str = "") -> str:
    return MIT_LICENSE.format(notice=f"{datetime.now().year} {holder}".strip())


def generate_readme(task: str, brief: str, checks: List[str]) -> str:
    criteria = "\n".join(f"- {c}" for c in checks) or "- (none)"
    return (
        f"# {task}\n\n"
        f"## Description\n\n{brief}\n\n"
        f"## Requirements\n\n{criteria}\n\n"
        "## Usage\n\n"
        "Open the deployed GitHub Pages site, or open `index.html` in a browser locally.\n\n"
        "## License\n\n"
        "MIT License - see LICENSE file for details.\n"
    )


def generate_fallback_html(task: str, brief: str, checks: List[str]) -> str:
    items = "\n".join(f'            <li class="requirement">{html.escape(c)}</li>' for c in checks)
    title = html.escape(task)
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title}</title>
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; margin: 0; padding: 20px; background: #f5f5f5; }}
        .container {{ background: white; border-radius: 12px; padding: 32px; max-width: 800px; margin: 40px auto; }}
        .brief {{ background: #f8f9fa; border-left: 4px solid #667eea; padding: 16px; }}
        .status {{ background: #fff3cd; border: 2px solid #ffc107; border-radius: 8px; padding: 16px; margin-top: 20px; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <div class="brief">
            <h2>Task Brief</h2>
            <p>{html.escape(brief)}</p>
        </div>
        <h2>Requirements</h2>
        <ul>
{items}
        </ul>
        <div class="status">
            <h3>Fallback Mode</h3>
            <p>This is a placeholder page. Generation will be retried in a later round.</p>
        </div>
    </div>
</body>
</html>
"""


# ------------------------- Generator -------------------------
class CodeGenerator:
    """Produces the file set for a task: index.html, LICENSE and README.md."""

    def __init__(self, llm, http: Optional[httpx.AsyncClient] = None, license_holder: str = ""):
        self.llm = llm
        self.http = http or httpx.AsyncClient(timeout=30)
        self.license_holder = license_holder

    async def aclose(self):
        await self.http.aclose()

    def _file_set(self, task_name: str, request: TaskRequest, index_html: str) -> Dict[str, str]:
        return {
            "index.html": index_html,
            "LICENSE": generate_license(self.license_holder),
            "README.md": generate_readme(task_name, request.brief, request.checks),
        }

    async def generate(
        self,
        request: TaskRequest,
        task_name: Optional[str] = None,
        existing_html: Optional[str] = None,
    ) -> Dict[str, str]:
        task_name = task_name or request.task or ""
        logger.info(f"[GENERATION] Generating app for {task_name!r} round {request.round}")
        try:
            parts = []
            for attachment in request.attachments:
                part = await attachment_to_gemini_part(self.http, attachment.url)
                if part:
                    parts.append(part)
            prompt = create_prompt(request, existing_html)
            response = await self.llm.generate_text(prompt, parts)
            index_html = parse_html(response)
        except Exception as e:
            logger.exception(f"[GENERATION] Code generation failed, using fallback page: {e}")
            fallback = generate_fallback_html(task_name, request.brief, request.checks)
            return self._file_set(task_name, request, fallback)
        logger.info(f"[GENERATION] Generated index.html ({len(index_html)} chars)")
        return self._file_set(task_name, request, index_html)
