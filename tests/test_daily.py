import pytest
from sqlalchemy import create_engine, select

from dispodeals.config import Settings
from dispodeals.db.tables import dispensaries
from dispodeals.jobs import daily


@pytest.mark.asyncio
async def test_run_daily_from_file(tmp_path):
    roster = tmp_path / "dispensaries.yml"
    roster.write_text(
        "- name: Closed Shop\n"
        "  city: Detroit\n"
        "- name: Quiet Leaf\n"
        "  city: Lansing\n"
        "  active: false\n"
    )
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'deals.db'}",
        storage_dir=tmp_path / "flyers",
        dispensaries_path=roster,
    )

    summary = await daily.run_daily(settings, from_file=True)

    assert summary.as_dict() == {"processed": 0, "skipped": 1, "failed": 0, "deals_inserted": 0}
    engine = create_engine(settings.database_url)
    with engine.connect() as conn:
        assert conn.execute(select(dispensaries.c.name)).all() == []
    engine.dispose()


def test_main_prints_summary(monkeypatch, capsys):
    async def fake_run_daily(settings=None, *, from_file=False):
        assert from_file
        return daily.BatchSummary(processed=2, deals_inserted=7)

    monkeypatch.setattr(daily, "run_daily", fake_run_daily)
    monkeypatch.setattr(daily.Settings, "from_env", classmethod(lambda cls, env=None: Settings()))
    daily.main(["--from-file"])
    assert '"deals_inserted": 7' in capsys.readouterr().out
