"""CLI entrypoint for the study pipeline."""

from __future__ import annotations

import json
import mimetypes
import os
from pathlib import Path
from typing import Optional

import requests
import typer

app = typer.Typer(name="stdp", help="Study pipeline command-line interface")

DEFAULT_HOST = "http://127.0.0.1:8000"


def _resolve_host(override: Optional[str]) -> str:
    if override:
        return override.rstrip('/')
    env_host = os.environ.get("STDP_HOST")
    if env_host:
        return env_host.rstrip('/')
    return DEFAULT_HOST


def _request(method: str, path: str, host: Optional[str] = None, **kwargs) -> requests.Response:
    base = _resolve_host(host)
    url = f"{base}{path}"
    resp = requests.request(method, url, timeout=300, **kwargs)
    if not resp.ok:
        try:
            detail = resp.json()
        except ValueError:
            detail = resp.text
        typer.echo(f"Request failed ({resp.status_code}): {detail}", err=True)
        raise typer.Exit(code=1)
    return resp


def _user_headers(user: Optional[str]) -> dict[str, str]:
    return {"X-User-Id": user} if user else {}


@app.command()
def upload(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="File to upload"),
    user: str = typer.Option(..., "--user", help="Owner of the uploaded file"),
    file_id: Optional[str] = typer.Option(None, "--file-id", help="Resume a previous chunked upload"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Preprocess and upload a file."""
    mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    data = {"file_id": file_id} if file_id else None
    with path.open("rb") as fh:
        resp = _request(
            "POST",
            "/uploads",
            host=host,
            headers=_user_headers(user),
            files={"file": (path.name, fh, mime_type)},
            data=data,
        )
    typer.echo(json.dumps(resp.json(), indent=2))


@app.command()
def transcribe(
    path: Optional[Path] = typer.Argument(None, exists=True, dir_okay=False, help="Audio file to transcribe"),
    storage_path: Optional[str] = typer.Option(None, "--storage-path", help="Transcribe an already stored file"),
    user: Optional[str] = typer.Option(None, "--user", help="User the generation is counted against"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Transcribe a recording."""
    if path is None and not storage_path:
        typer.echo("Provide an audio file or --storage-path", err=True)
        raise typer.Exit(code=2)
    data = {"storage_path": storage_path} if storage_path else None
    if path is None:
        resp = _request("POST", "/generate/transcription", host=host, headers=_user_headers(user), data=data)
    else:
        mime_type = mimetypes.guess_type(path.name)[0] or "audio/webm"
        with path.open("rb") as fh:
            resp = _request(
                "POST",
                "/generate/transcription",
                host=host,
                headers=_user_headers(user),
                files={"audio": (path.name, fh, mime_type)},
                data=data,
            )
    typer.echo(resp.json()["text"])


@app.command()
def chat(
    prompt: str = typer.Argument(..., help="User message"),
    system: Optional[str] = typer.Option(None, "--system", help="System prompt"),
    model: Optional[str] = typer.Option(None, "--model", help="Model override"),
    temperature: Optional[float] = typer.Option(None, "--temperature", help="Sampling temperature"),
    user: Optional[str] = typer.Option(None, "--user", help="User the generation is counted against"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Run a single chat completion."""
    messages = [{"role": "user", "content": prompt}]
    if system:
        messages.insert(0, {"role": "system", "content": system})
    payload: dict[str, object] = {"messages": messages}
    if model is not None:
        payload["model"] = model
    if temperature is not None:
        payload["temperature"] = temperature
    resp = _request("POST", "/generate/chat", host=host, headers=_user_headers(user), json=payload)
    typer.echo(resp.json()["content"])


@app.command()
def quota(
    user: str = typer.Argument(..., help="User identifier"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Show today's generation quota for a user."""
    resp = _request("GET", f"/quota/{user}", host=host)
    typer.echo(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    app()
