"""Package configuration."""

from setuptools import find_packages, setup

install_requires = [
    'boto3',
    'kubernetes',
    'prettytable',
    'PyYAML',
    'tenacity',
]

# Extra dependencies
extras_require = {
    # Test dependencies
    'tests': [
        'bandit>=1.5.0',
        'flake8>=3.2.1',
        'mypy>=0.670',
        'pytest>=6.1.0',
        'types-PyYAML',
    ],
}

setup(
    description='Zero downtime rolling replacement of the kubernetes nodes of a role backed by an AWS autoscaling group',
    entry_points={
        'console_scripts': [
            'kube-asg-roll = kube_asg_roll.roll_nodes:main',
        ],
    },
    extras_require=extras_require,
    install_requires=install_requires,
    keywords=['kubernetes', 'aws', 'autoscaling', 'automation', 'orchestration'],
    license='GPLv3+',
    name='kube-asg-roll',
    packages=find_packages(include=['kube_asg_roll', 'kube_asg_roll.*']),
    platforms=['GNU/Linux'],
    python_requires='>=3.7',
    version='0.1.0',
    zip_safe=False,
)
