import pytest

from interpreter import Interpreter


class Console:
    """Scripted stand-in for the terminal used by read/write."""

    def __init__(self) -> None:
        self.lines = []
        self.output = []

    def read(self) -> str:
        if not self.lines:
            raise EOFError
        return self.lines.pop(0)

    def write(self, text: str) -> None:
        self.output.append(text)

    @property
    def text(self) -> str:
        return "".join(self.output)


@pytest.fixture
def console():
    return Console()


@pytest.fixture
def interpreter(console):
    return Interpreter(input_provider=console.read, output_sink=console.write)


@pytest.fixture
def run(interpreter):
    def _run(source, filename="<test>"):
        return interpreter.run(source, filename)

    return _run
