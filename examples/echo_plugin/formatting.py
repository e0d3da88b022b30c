def format_reply(text):
    reply = f"echo: {text}"
    print("formatted reply", len(reply))
    return reply
