import os
import re
import sys
from glob import glob

from setuptools import setup, Command
from setuptools.command.build_py import build_py as _build_py
from setuptools.command.develop import develop as _develop

ROOT_DIR = os.path.abspath(os.path.dirname(os.path.relpath(__file__)))
ETCDRPC_PROTO_DIR = os.path.join(ROOT_DIR, 'etcdrpc', 'proto')


def _read_version():
    with open(os.path.join(ROOT_DIR, 'etcdrpc', '_version.py')) as fil:
        return re.search(r"__version__ = '([^']*)'", fil.read()).group(1)


class build_proto(Command):
    description = "build protobuf artifacts"

    user_options = []

    def initialize_options(self):
        pass

    finalize_options = initialize_options

    def run(self):
        import grpc_tools
        from grpc_tools import protoc
        include = os.path.join(os.path.dirname(grpc_tools.__file__), '_proto')
        # Sources are compiled relative to the project root, so the generated
        # modules import each other as ``etcdrpc.proto.*_pb2``
        for src in sorted(glob(os.path.join(ETCDRPC_PROTO_DIR, "*.proto"))):
            command = ['grpc_tools.protoc',
                       '--proto_path=%s' % ROOT_DIR,
                       '--proto_path=%s' % include,
                       '--python_out=%s' % ROOT_DIR,
                       '--grpc_python_out=%s' % ROOT_DIR,
                       src]
            if protoc.main(command) != 0:
                self.warn('Command: `%s` failed' % ' '.join(command))
                sys.exit(1)


def _compiled_protos():
    return glob(os.path.join(ETCDRPC_PROTO_DIR, '*_pb2*.py'))


def _ensure_proto(command):
    if not _compiled_protos():
        command.run_command('build_proto')


class build_py(_build_py):
    def run(self):
        _ensure_proto(self)
        _build_py.run(self)


class develop(_develop):
    def run(self):
        if not self.uninstall:
            _ensure_proto(self)
        _develop.run(self)


class clean_proto(Command):
    description = "remove generated protobuf artifacts"

    user_options = []

    def initialize_options(self):
        pass

    finalize_options = initialize_options

    def run(self):
        for fil in _compiled_protos():
            if not self.dry_run:
                os.unlink(fil)


if _compiled_protos() and 'clean_proto' not in sys.argv:
    setup_requires = []
else:
    setup_requires = ['grpcio-tools']


install_requires = ['grpcio>=1.48.0',
                    'protobuf>=4.22.0',
                    'pyyaml']

extras_require = {'test': ['pytest']}

# The generated protobuf modules aren't checked in. They're built on demand
# by whichever of these commands runs first.
cmdclass = {'build_proto': build_proto,  # directly build the proto source
            'build_py': build_py,        # bdist_wheel or pip install [-e] .
            'develop': develop,          # python setup.py develop
            'clean_proto': clean_proto}  # remove the generated modules


setup(name='etcdrpc',
      version=_read_version(),
      cmdclass=cmdclass,
      license='BSD',
      description='A thin client for the etcd v3 gRPC API',
      long_description=(open('README.rst').read()
                        if os.path.exists('README.rst') else ''),
      classifiers=["Development Status :: 4 - Beta",
                   "License :: OSI Approved :: BSD License",
                   "Programming Language :: Python :: 3",
                   "Topic :: Database",
                   "Topic :: System :: Distributed Computing"],
      keywords='etcd grpc key-value distributed lock lease',
      packages=['etcdrpc', 'etcdrpc.proto'],
      package_data={'etcdrpc.proto': ['*.proto']},
      entry_points='''
        [console_scripts]
        etcdrpc=etcdrpc.cli:main
      ''',
      python_requires='>=3.7',
      install_requires=install_requires,
      setup_requires=setup_requires,
      extras_require=extras_require,
      zip_safe=False)
