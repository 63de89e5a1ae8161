"""Global tests for all modules."""
import argparse
import importlib
import inspect
import os
import pathlib
from pkgutil import iter_modules

import pytest
from setuptools import find_packages

from kube_asg_roll.roll_nodes import RollNodes


def get_modules():
    """Collect all the packages and modules."""
    base_package = "kube_asg_roll"
    base_path = pathlib.Path(os.getcwd()) / base_package
    modules = {base_package}
    for module_info in iter_modules([str(base_path)]):
        modules.add(f"{base_package}.{module_info.name}")

    for package in find_packages(base_path):
        modules.add(f"{base_package}.{package}")
        package_path = base_path / package.replace(".", "/")
        for module_info in iter_modules([str(package_path)]):
            if not module_info.ispkg:
                modules.add(f"{base_package}.{package}.{module_info.name}")

    return sorted(modules)


@pytest.fixture(scope="class", params=get_modules())
def module_instance(request):
    """Load a given module and return it."""
    request.cls.module = importlib.import_module(request.param)


@pytest.mark.usefixtures("module_instance")
class TestModules:
    """Generic tests for each module. For each module the class of tests will be called.

    * Testing the module import is done implicitely as every test requires that it can be imported.
    """

    def test_has_docstring(self):
        """Every module should say what it is for."""
        assert inspect.getdoc(self.module), f"Module {self.module.__name__} has no docstring"

    def test_loggers_are_named_after_the_module(self):
        """If a module has a LOGGER it should be the one of the module itself."""
        logger = getattr(self.module, "LOGGER", None)
        if logger is not None:
            assert logger.name == self.module.__name__


def test_argument_parser():
    """It should return a valid ArgumentParser instance without raising exceptions."""
    parser = RollNodes().argument_parser()

    assert isinstance(parser, argparse.ArgumentParser)


@pytest.mark.parametrize(
    "argv",
    (
        [],
        ["--aws-profile", "prod", "--role", "worker"],
        ["--kube-context", "prod", "--role", "worker"],
        ["--kube-context", "prod", "--aws-profile", "prod"],
        ["--kube-context", "prod", "--aws-profile", "prod", "--role", "worker", "--batch-size", "three"],
    ),
)
def test_argument_parser_rejects_incomplete_args(argv):
    parser = RollNodes().argument_parser()

    with pytest.raises(SystemExit) as error:
        parser.parse_args(argv)

    assert error.value.code == 2


def test_argument_parser_defaults():
    args = RollNodes().argument_parser().parse_args(
        ["--kube-context", "prod", "--aws-profile", "prod", "--role", "worker"]
    )

    assert args.batch_size == 3
    assert args.drain_timeout == 600
    assert args.resume is None
    assert not args.verbose_report
    assert not args.report_only
    assert args.snapshots_file is None
