#!/usr/bin/env python
import argparse
import csv
import datetime as dt
import time
from typing import Dict, List, Optional, Tuple

import requests

# Fester Evaluationskatalog
EVAL_QUESTIONS: List[Tuple[int, str]] = [
    (1, "Qual a potência recomendada?"),
    (2, "Quais arquivos foram enviados?"),
    (3, "Resuma o documento em três frases."),
]

FIELDNAMES = [
    "timestamp",
    "run_name",
    "question_id",
    "question_text",
    "repetition",
    "provider",
    "ok",
    "status_code",
    "error_message",
    "answer_len_chars",
    "answer",
    "duration_ms",
]


def call_chat(
    base_url: str,
    question: str,
    provider: Optional[str] = None,
    session: Optional[str] = None,
    timeout: float = 120.0,
) -> requests.Response:
    url = base_url.rstrip("/") + "/chat"
    payload: Dict[str, str] = {"message": question}
    if provider:
        payload["provider"] = provider
    if session:
        payload["session_id"] = session
    return requests.post(url, json=payload, timeout=timeout)


def build_row(
    run_name: str,
    q_id: int,
    q_text: str,
    rep: int,
    provider: Optional[str],
    resp: Optional[requests.Response],
    duration_ms: Optional[float],
    exc: Optional[Exception] = None,
) -> Dict:
    row = {
        "timestamp": dt.datetime.now().isoformat(timespec="seconds"),
        "run_name": run_name,
        "question_id": q_id,
        "question_text": q_text,
        "repetition": rep,
        "provider": provider or "",
        "ok": False,
        "status_code": None,
        "error_message": None,
        "answer_len_chars": 0,
        "answer": "",
        "duration_ms": duration_ms,
    }
    if resp is None:
        # Backend nicht erreichbar
        row["error_message"] = str(exc) if exc else "no response"
        return row

    row["status_code"] = resp.status_code
    try:
        data = resp.json()
    except ValueError:
        data = {}
    if resp.ok:
        answer = data.get("reply") or ""
        row.update(ok=True, answer=answer, answer_len_chars=len(answer))
    else:
        row["error_message"] = data.get("error") or resp.text[:200]
    return row


def ensure_header(path: str) -> bool:
    """
    Prüft, ob die Datei existiert.
    Falls nicht, wird später ein Header geschrieben.
    """
    try:
        with open(path, "r", encoding="utf-8"):
            return False
    except FileNotFoundError:
        return True


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Führt eine Evaluation über /chat gegen den Chatbot aus."
    )
    parser.add_argument(
        "--base-url",
        default="http://localhost:3000",
        help="Basis URL des Backends, z.B. http://localhost:3000",
    )
    parser.add_argument(
        "--run-name",
        required=True,
        help="Name des Durchlaufs, z.B. 'openai' oder 'ollama'.",
    )
    parser.add_argument("--provider", help="Provider-ID, Default des Backends wenn leer.")
    parser.add_argument(
        "--out",
        default="eval_results.csv",
        help="Pfad zur Ausgabedatei (CSV).",
    )
    parser.add_argument(
        "--repetitions",
        type=int,
        default=1,
        help="Wie oft jede Frage gestellt werden soll (Default: 1).",
    )

    args = parser.parse_args()
    write_header = ensure_header(args.out)

    with open(args.out, "a", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=FIELDNAMES)
        if write_header:
            writer.writeheader()

        for q_id, q_text in EVAL_QUESTIONS:
            for rep in range(1, args.repetitions + 1):
                print(f"[{args.run_name}] Frage {q_id} (Run {rep}): {q_text}")
                # eigene Session je Frage, damit der Verlauf nicht mitläuft
                session = f"eval-{args.run_name}-{q_id}-{rep}"
                t0 = time.perf_counter()
                try:
                    resp = call_chat(args.base_url, q_text, args.provider, session)
                except requests.RequestException as e:
                    writer.writerow(build_row(args.run_name, q_id, q_text, rep, args.provider, None, None, e))
                    continue
                duration = round((time.perf_counter() - t0) * 1000.0, 2)
                writer.writerow(build_row(args.run_name, q_id, q_text, rep, args.provider, resp, duration))

    print(f"Fertig. Ergebnisse in {args.out}.")


if __name__ == "__main__":
    main()
