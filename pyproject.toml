[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sptth"
version = "0.1.0"
description = "Local development DNS resolver and HTTPS reverse proxy with an auto-provisioned certificate authority"
requires-python = ">=3.11"
keywords = ["dns", "https", "reverse-proxy", "tls", "certificate-authority", "local-development"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Operating System :: MacOS",
    "Operating System :: POSIX :: Linux",
    "Operating System :: Microsoft :: Windows",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: Internet :: Name Service (DNS)",
    "Topic :: Software Development",
]
dependencies = [
    "cryptography",
    "dnspython",
    "aiohttp",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
sptth = "sptth.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["sptth"]

[tool.pytest.ini_options]
addopts = "-ra"
asyncio_mode = "strict"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
