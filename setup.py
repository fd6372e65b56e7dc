import logging

from setuptools import setup, find_packages

log = logging.getLogger(__name__)

setup(
	name='coupon_core',
	version='0.1.0.dev0',
	packages=find_packages(exclude=['tests', 'tests.*']),
	description='Hands out single-use coupon codes, one per client and hour',
	install_requires=[
		'gconf',
		'pyyaml',
		'uvicorn',
		'fastapi',
		'pydantic>=2',
		'psycopg[binary]',
		'psycopg-pool',
		'yoyo-migrations',
		'blinker',
	],
	extras_require={
		'dev': [
			'setuptools',
			'ruff',
			'pytest',
			'pytest-mock',
			'pytest-asyncio',
			'asgi-lifespan==2.*',
			'httpx',
		]
	},
	entry_points={
		'console_scripts': [
			'coupon-core=coupon_core.__main__:main',
			'coupon-seed=coupon_core.service.seeding:main',
		],
	},
	package_data={'': ['config.yml']},
)
