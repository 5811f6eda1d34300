from voipfix.service import run

run()
