"""CLI entrypoint for Vectoria."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

import requests
import typer

app = typer.Typer(name="vectoria", help="Vectoria command-line interface")
datasets_app = typer.Typer(name="datasets")
app.add_typer(datasets_app, name="datasets")

DEFAULT_HOST = "http://127.0.0.1:8000"


def _resolve_host(override: Optional[str]) -> str:
    if override:
        return override.rstrip("/")
    env_host = os.environ.get("VECTORIA_HOST")
    if env_host:
        return env_host.rstrip("/")
    return DEFAULT_HOST


def _request(method: str, path: str, host: Optional[str] = None, timeout: float = 600, **kwargs) -> requests.Response:
    base = _resolve_host(host)
    url = f"{base}{path}"
    resp = requests.request(method, url, timeout=timeout, **kwargs)
    if not resp.ok:
        try:
            detail = resp.json()
        except ValueError:
            detail = resp.text
        typer.echo(f"Request failed ({resp.status_code}): {detail}", err=True)
        raise typer.Exit(code=1)
    return resp


def read_records(path: Path) -> list[dict[str, Any]]:
    """Rows from a JSONL file (one object per line) or a JSON array."""
    text = path.expanduser().read_text(encoding="utf-8")
    if text.lstrip().startswith("["):
        rows = json.loads(text)
    else:
        rows = [json.loads(line) for line in text.splitlines() if line.strip()]
    if not all(isinstance(row, dict) for row in rows):
        raise typer.BadParameter("every record must be a JSON object", param_hint="FILE")
    return rows


@app.command()
def process(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSONL or JSON records"),
    text_column: str = typer.Option("text", "--text-column", help="Column holding document text"),
    id_column: Optional[str] = typer.Option(None, "--id-column", help="Column holding document ids"),
    name: Optional[str] = typer.Option(None, "--name", help="Dataset name"),
    dataset_id: Optional[str] = typer.Option(None, "--dataset", help="Re-process this dataset"),
    persist: bool = typer.Option(True, "--persist/--no-persist", help="Save the result"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Process a records file into a searchable, clustered dataset."""
    payload = {
        "records": read_records(file),
        "text_column": text_column,
        "id_column": id_column,
        "name": name or file.stem,
        "dataset_id": dataset_id,
        "persist": persist,
    }
    resp = _request("POST", "/datasets", host=host, json=payload)
    typer.echo(json.dumps(resp.json(), indent=2))


@app.command()
def search(
    dataset_id: str = typer.Argument(..., help="Dataset identifier"),
    q: str = typer.Argument(..., help="Query text"),
    semantic: bool = typer.Option(False, "--semantic", help="Use embedding search instead of BM25"),
    k: int = typer.Option(10, "--k", help="Number of results to return"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Search documents in a dataset."""
    payload = {"query": q, "search_type": "semantic" if semantic else "keyword", "k": k}
    resp = _request("POST", f"/datasets/{dataset_id}/search", host=host, json=payload)
    typer.echo(json.dumps(resp.json(), indent=2))


@app.command()
def ask(
    dataset_id: str = typer.Argument(..., help="Dataset identifier"),
    question: str = typer.Argument(..., help="Question text"),
    scope: Optional[list[str]] = typer.Option(None, "--scope", help="Limit retrieval to these document ids"),
    num_results: Optional[int] = typer.Option(None, "--num-results", help="Parent documents in context"),
    vector_weight: Optional[float] = typer.Option(None, "--vector-weight", help="0 = BM25 only, 1 = vector only"),
    stream: bool = typer.Option(False, "--stream", help="Print tokens as they arrive"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Ask a question answered from the dataset's documents."""
    payload: dict[str, Any] = {"question": question, "stream": stream}
    if scope:
        payload["scope"] = scope
    if num_results is not None:
        payload["num_results"] = num_results
    if vector_weight is not None:
        payload["vector_weight"] = vector_weight
    if stream:
        resp = _request("POST", f"/datasets/{dataset_id}/ask", host=host, json=payload, stream=True)
        for piece in resp.iter_content(chunk_size=None, decode_unicode=True):
            typer.echo(piece, nl=False)
        typer.echo()
        return
    resp = _request("POST", f"/datasets/{dataset_id}/ask", host=host, json=payload)
    typer.echo(json.dumps(resp.json(), indent=2))


@app.command()
def cancel(
    dataset_id: str = typer.Argument(..., help="Dataset identifier"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Stop answers currently being generated for a dataset."""
    resp = _request("POST", f"/datasets/{dataset_id}/ask/cancel", host=host)
    typer.echo(json.dumps(resp.json(), indent=2))


@app.command()
def export(
    dataset_id: str = typer.Argument(..., help="Dataset identifier"),
    output: Path = typer.Option(..., "--output", "-o", help="Destination JSON file"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Write a dataset export to a file."""
    resp = _request("GET", f"/datasets/{dataset_id}/export", host=host)
    output.expanduser().write_bytes(resp.content)
    typer.echo(json.dumps({"status": "ok", "path": str(output), "bytes": len(resp.content)}))


@app.command("import")
def import_file(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Exported dataset JSON"),
    persist: bool = typer.Option(True, "--persist/--no-persist", help="Save the imported dataset"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Load an exported dataset back into the server."""
    resp = _request(
        "POST",
        "/datasets/import",
        host=host,
        params={"persist": persist},
        data=file.expanduser().read_bytes(),
        headers={"Content-Type": "application/json"},
    )
    typer.echo(json.dumps(resp.json(), indent=2))


@datasets_app.command("list")
def list_datasets(
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """List open and saved datasets."""
    resp = _request("GET", "/datasets", host=host)
    typer.echo(json.dumps(resp.json(), indent=2))


@datasets_app.command("remove")
def remove_dataset(
    dataset_id: str = typer.Argument(..., help="Dataset identifier"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Close a dataset and delete its saved copy."""
    resp = _request("DELETE", f"/datasets/{dataset_id}", host=host)
    typer.echo(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    app()
