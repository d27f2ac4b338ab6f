import random
import string

import pytest

from dockpack.errors import ConfigurationError
from dockpack.PARSERS.config_parser import ConfigParser
from dockpack.PARSERS.dockerfile_parser import DockerfileParser
from dockpack.REGISTRY.image_reference import ImageName
from dockpack.UTILS.string_interpolation import EnvironmentInterpolator


def random_string(rng, length, alphabet=string.printable):
    return ''.join(rng.choice(alphabet) for _ in range(length))


@pytest.fixture
def rng():
    return random.Random(20240101)


def test_fuzz_dockerfile_parser(rng):
    parser = DockerfileParser()
    for _ in range(200):
        content = random_string(rng, rng.randint(0, 1000))
        instructions = parser.parse_from_string(content)
        for instruction in instructions:
            assert instruction.instruction.isupper()
            assert isinstance(instruction.arguments, list)
        parser.copy_sources(instructions)


def test_fuzz_config_parser(rng):
    # Junk must either parse or be reported as a configuration problem
    parser = ConfigParser(context={})
    for _ in range(200):
        content = random_string(rng, rng.randint(0, 1000))
        try:
            parser.parse_from_string(content)
        except ConfigurationError:
            pass


def test_fuzz_image_names(rng):
    alphabet = string.ascii_letters + string.digits + "/:@._-+ "
    for _ in range(500):
        name = random_string(rng, rng.randint(0, 80), alphabet)
        try:
            image = ImageName.parse(name)
        except ConfigurationError:
            continue
        assert ImageName.parse(image.full_name).full_name == image.full_name


def test_fuzz_interpolation_without_strict(rng):
    alphabet = string.ascii_letters + "${}:-+_ "
    context = {"A": "1", "EMPTY": ""}
    for _ in range(500):
        template = random_string(rng, rng.randint(0, 60), alphabet)
        result = EnvironmentInterpolator.interpolate(template, context, strict=False)
        if "$" not in template:
            assert result == template
