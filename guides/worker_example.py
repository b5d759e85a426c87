"""Example showing how to run a JobWorker against the configured transport."""

import asyncio
import importlib
import sys

from acidjob import JobWorker, get_transport


async def main():
    job_name = sys.argv[1]
    job_module = sys.argv[2]

    # Importing the module registers its job classes
    importlib.import_module(job_module)

    transport = get_transport()
    await transport.connect()
    worker = JobWorker(transport, job_name)

    # Start worker
    try:
        await worker.start()
    finally:
        await transport.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
