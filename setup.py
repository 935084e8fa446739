from setuptools import setup


with open("README.pypi.md", "r", encoding='UTF-8') as f:
    readme = f.read()

classifiers = [
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: Implementation :: CPython",
    "Intended Audience :: Developers",
    "Intended Audience :: Telecommunications Industry",
    "Topic :: Communications :: Telephony",
    "Topic :: Software Development :: Libraries",
]

keywords = ("asterisk", "manager", "interface",
            "asterisk-manager-interface", "ami", "asterisk-ami",
            "extension", "hint", "monitoring",
            "asyncio", "async")

setup(
    name='ami-extension-monitor',
    version='0.1.0',
    packages=['ami_monitor', 'ami_monitor.client'],
    license='Apache-2.0 license',
    description='Asynchronous Asterisk Manager Interface client that keeps extension states in sync',
    long_description=readme,
    long_description_content_type="text/markdown",
    classifiers=classifiers,
    keywords=' '.join(keywords),
    install_requires=['aiohttp', 'pydantic>=2', 'pydantic-settings>=2'],
    extras_require={
        'test': ['pytest', 'pytest-asyncio'],
    },
    python_requires='>=3.10'
)
