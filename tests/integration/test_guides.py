import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[2]))

import stepflow.persistence as persistence
from guides import document_approval_example, recovery_example
from stepflow.persistence import InMemoryExecutionRepository


@pytest.fixture(autouse=True)
def memory_repository():
    persistence._repository_instance = InMemoryExecutionRepository()
    yield
    persistence.reset_repository()


@pytest.mark.asyncio
async def test_document_approval_guide(capsys):
    await document_approval_example.main()
    output = capsys.readouterr().out
    assert "Available actions: ['submit_for_review']" in output
    assert "Finished with status completed" in output


@pytest.mark.asyncio
async def test_recovery_guide(capsys):
    await recovery_example.main()
    output = capsys.readouterr().out
    assert "Recommended recovery: retry_last" in output
    assert "Recovered with retry_last to documentation_review (status active)" in output
    assert "Integrity valid: True" in output
