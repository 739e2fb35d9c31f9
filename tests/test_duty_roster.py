import asyncio
import sys
from pathlib import Path

import httpx
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from caches import TTLStore  # noqa: E402
from duty_roster import DutyRosterClient, find_column, parse_roster_rows  # noqa: E402
from errors import UpstreamUnavailable  # noqa: E402

HEADER = [
    "Clientes",
    "Rota",
    "Motorista",
    "Reserva",
    "Veiculo Escala",
    "Veiculo Enviado",
    "Prog",
    "Realizado",
    "Obs",
    "Manutenção",
    "Aguardando Carro",
]

ROWS = [
    HEADER,
    ["Beta", "Linha 2", "Carlos", "", "101", "101", "09:15:00", "09:20:00", "", "", ""],
    ["ACME", "Linha 1", "", "Sim", "100", "", "07:30:00", "", "trânsito", "Sim", "não"],
    ["Viação Mimo", "Garagem", "João", "", "1", "1", "06:00", "", "", "", ""],
    ["", "", "", "", "", "", "", "", "", "", ""],
    ["Garagem Central", "Recolhe", "Ana", "", "2", "2", "05:00", "", "", "", ""],
    ["Gama", "Linha 3", "Bia", "", "", "", "08:00", "", "", "", "aguardando"],
]


def test_find_column_first_header_match_wins():
    headers = ["clientes", "rota", "motorista"]
    assert find_column(headers, ("cliente", "empresa")) == 0
    assert find_column(headers, ("condutor", "mot")) == 2
    assert find_column(headers, ("placa",)) == -1


def test_parse_roster_rows_maps_columns_and_sorts():
    entries = parse_roster_rows(ROWS)

    assert [e["empresa"] for e in entries] == ["ACME", "Gama", "Beta"]
    acme = entries[0]
    assert acme["rota"] == "Linha 1"
    assert acme["motorista"] == "Não Definido"
    assert acme["reserva"] == "Sim"
    assert acme["frota_escala"] == "100"
    assert acme["frota_enviada"] == "---"
    assert acme["h_prog"] == "07:30"
    assert acme["h_real"] == ""
    assert acme["obs"] == "trânsito"
    assert acme["manutencao"] is True
    assert acme["aguardando"] is False

    assert entries[1]["aguardando"] is True
    assert entries[2]["h_real"] == "09:20"


def test_blocked_companies_are_dropped_regardless_of_accents():
    names = [e["empresa"] for e in parse_roster_rows(ROWS)]
    assert "Viação Mimo" not in names
    assert "Garagem Central" not in names


def test_parse_roster_rows_rejects_non_tables():
    assert parse_roster_rows(None) == []
    assert parse_roster_rows({"erro": "x"}) == []
    assert parse_roster_rows([HEADER]) == []


def test_fetch_sends_date_and_caches_per_day():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=ROWS)

    client = DutyRosterClient("https://script.test/exec", transport=httpx.MockTransport(handler))

    async def run():
        first = await client.fetch("10/03/2025")
        second = await client.fetch("10/03/2025")
        other = await client.fetch("11/03/2025")
        return first, second, other

    first, second, other = asyncio.run(run())
    assert first == second == other
    assert len(seen) == 2
    assert seen[0].url.params["action"] == "read"
    assert seen[0].url.params["data"] == "10/03/2025"


def test_fetch_failure_is_upstream_unavailable():
    client = DutyRosterClient(
        "https://script.test/exec",
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    with pytest.raises(UpstreamUnavailable):
        asyncio.run(client.fetch("10/03/2025"))


def test_past_days_are_evicted_on_write():
    now = [0.0]
    client = DutyRosterClient(
        "https://script.test/exec",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json=ROWS)),
    )
    client.cache = TTLStore(60, clock=lambda: now[0])

    async def run():
        await client.fetch("10/03/2025")
        now[0] += 61
        await client.fetch("11/03/2025")

    asyncio.run(run())
    assert len(client.cache._entries) == 1
    assert "escala_v2_11/03/2025" in client.cache
